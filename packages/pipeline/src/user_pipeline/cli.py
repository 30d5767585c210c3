from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from user_pipeline.collaborators import LocalTemplateEngine
from user_pipeline.core import (
    PipelineError,
    bind,
    configure_logging,
    get_logger,
    load_settings,
    new_run_id,
    read_tree,
    write_tree,
)
from user_pipeline.definition import Collaborators, build_pipeline, load_definition
from user_pipeline.deploy import DeploymentExecutor
from user_pipeline.pipeline import PipelineRunner, RunnerConfig, Status
from user_pipeline.template import SynthConfig, Template, TemplateSynthesizer

console = Console()


def _parse_params(items: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise SystemExit(f"--param expects NAME=VALUE, got {item!r}")
        out[name] = value
    return out


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="user-pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run Source -> Build -> Deploy once")
    run.add_argument("definition", type=Path, help="pipeline.json or its directory")
    run.add_argument(
        "--source-root",
        type=Path,
        default=None,
        help="Root of {owner}/{repo} source directories (directory sources only)",
    )
    run.add_argument("--run-id", default=None)

    synth = sub.add_parser("synth", help="Synthesize templates from an infra directory")
    synth.add_argument("infra", type=Path)
    synth.add_argument("--out", type=Path, default=Path("templates"))
    synth.add_argument("--repository-uri", default=None)

    deploy = sub.add_parser("deploy", help="Apply a template with resolved parameters")
    deploy.add_argument("template", type=Path)
    deploy.add_argument("--environment", default=None)
    deploy.add_argument(
        "--param", action="append", dest="params", help="NAME=VALUE (repeatable)"
    )

    show = sub.add_parser("show", help="Show the state of an environment")
    show.add_argument("environment")

    return p


def _cmd_run(args: argparse.Namespace, s: Any, log: Any) -> int:
    defn = load_definition(args.definition)
    collab = Collaborators.local(
        defn, state_root=Path(s.state_root), source_root=args.source_root
    )
    run_id = args.run_id or new_run_id()
    bind(run_id=run_id, pipeline=defn.name)

    runner = PipelineRunner(
        stages=build_pipeline(defn, collab),
        name=defn.name,
        cfg=RunnerConfig(
            max_workers=s.max_workers,
            resolve_timeout_s=s.resolve_timeout_s,
            artifact_timeout_s=s.artifact_timeout_s,
        ),
        logger=log,
    )

    console.print(
        Panel.fit(
            Text(f"user-pipeline - {defn.name}\nrun_id={run_id}", style="bold"),
            title="Run",
        )
    )
    with console.status("[bold]running[/]", spinner="dots"):
        exit_code, report = runner.run(
            run_root=Path(s.run_root),
            state_root=Path(s.state_root),
            run_id=run_id,
            meta={"definition": str(args.definition)},
        )

    tbl = Table(title="Stages", show_header=True, box=None)
    tbl.add_column("stage")
    tbl.add_column("status")
    tbl.add_column("ms", justify="right")
    for st in report.stages:
        color = {Status.SUCCEEDED: "green", Status.FAILED: "red"}.get(st.status, "yellow")
        tbl.add_row(st.stage, f"[{color}]{st.status.value}[/{color}]", str(st.duration_ms))
    console.print(tbl)

    res = Table(title="Result", show_header=False, box=None)
    res.add_row("status", "[green]ok[/green]" if exit_code == 0 else "[red]failed[/red]")
    if report.failure is not None:
        res.add_row("failure", report.failure.message)
    for name, value in report.parameters.items():
        res.add_row(name, value)
    res.add_row("report", str(Path(s.run_root) / run_id / "run_report.json"))
    console.print(res)
    return exit_code


def _cmd_synth(args: argparse.Namespace) -> int:
    result = TemplateSynthesizer(SynthConfig(repository_uri=args.repository_uri)).synthesize(
        read_tree(args.infra)
    )
    write_tree(args.out, result.files())

    tbl = Table(title="Templates", show_header=True, box=None)
    tbl.add_column("stack")
    tbl.add_column("placeholders")
    tbl.add_column("sha256")
    for name, t in sorted(result.templates.items()):
        tbl.add_row(name, ", ".join(t.placeholders) or "-", t.sha256[:12])
    console.print(tbl)
    return 0


def _cmd_deploy(args: argparse.Namespace, s: Any, log: Any) -> int:
    params = _parse_params(args.params)
    raw = args.template.read_bytes()
    stack = args.template.name.split(".", 1)[0]
    template = Template.from_bytes(stack, raw)
    engine = LocalTemplateEngine(state_root=Path(s.state_root))
    ref = DeploymentExecutor(engine, logger=log).deploy(
        template, params, environment=args.environment
    )
    console.print(
        Panel.fit(
            Text(
                f"{ref.name} v{ref.version}\n"
                + ("updated" if ref.changed else "already at desired state"),
                style="bold",
            ),
            title="Deploy",
        )
    )
    return 0


def _cmd_show(args: argparse.Namespace, s: Any) -> int:
    engine = LocalTemplateEngine(state_root=Path(s.state_root))
    ref = engine.current(args.environment)
    history = engine.history(args.environment)
    if ref is None and not history:
        console.print(f"[red]No environment {args.environment}[/red]")
        return 1

    if ref is not None:
        tbl = Table(title=ref.name, show_header=False, box=None)
        tbl.add_row("version", str(ref.version))
        tbl.add_row("fingerprint", ref.fingerprint[:12])
        tbl.add_row("template", ref.template_sha256[:12])
        for k, v in sorted(ref.parameters.items()):
            tbl.add_row(f"param {k}", v)
        for k, v in sorted(ref.outputs.items()):
            tbl.add_row(f"output {k}", str(v))
        console.print(tbl)

    hist = Table(title="History", show_header=True, box=None)
    hist.add_column("version", justify="right")
    hist.add_column("status")
    hist.add_column("applied")
    hist.add_column("reason")
    for h in history:
        hist.add_row(str(h["version"]), h["status"], h["applied_at_utc"], h.get("reason") or "")
    console.print(hist)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format, force=True)
    log = get_logger("user_pipeline")
    bind(command=args.cmd)

    try:
        if args.cmd == "run":
            return _cmd_run(args, s, log)
        if args.cmd == "synth":
            return _cmd_synth(args)
        if args.cmd == "deploy":
            return _cmd_deploy(args, s, log)
        return _cmd_show(args, s)
    except PipelineError as e:
        console.print(f"[red]{type(e).__name__}[/red]: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
