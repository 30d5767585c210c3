from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

import structlog

from user_pipeline.core import (
    BuildFailed,
    TransientError,
    monotonic_ms,
    remove_tree,
    safe_unlink,
    sha256_text,
    stable_json_bytes,
    write_tree,
)

from .http import RetryPolicy, run_with_retries
from .images import LocalImageRepository
from .source import SourceSnapshot

log = structlog.get_logger(__name__)

PHASES: tuple[str, ...] = ("install", "build", "post_build")
IMAGE_DEFINITIONS = "imagedefinitions.json"
BUILD_LOG = "build.log"

_EXPORTS_FILE = ".pipeline-exports"
_VAR_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    container_name: str
    runtime: str | None = None
    phases: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    # shell variables read back after the phases run
    exported_variables: tuple[str, ...] = ("imageTag",)
    tag_variable: str = "imageTag"
    retries: int = 0
    retry_backoff_s: float = 1.0
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        unknown = sorted(set(self.phases) - set(PHASES))
        if unknown:
            raise ValueError(f"Unknown build phase(s) {unknown}; expected {list(PHASES)}")
        bad = [v for v in self.exported_variables if not _VAR_RE.match(v)]
        if bad:
            raise ValueError(f"Invalid exported variable name(s): {bad}")


@dataclass(frozen=True, slots=True)
class PhaseResult:
    phase: str
    returncode: int
    duration_ms: int


@dataclass(frozen=True, slots=True)
class BuildResult:
    image_uri: str
    tag: str
    digest: str
    source_version: str
    exported: dict[str, str] = field(default_factory=dict)
    files: dict[str, bytes] = field(default_factory=dict)
    phases: tuple[PhaseResult, ...] = ()


class BuildRunner(Protocol):
    def build(
        self, source: SourceSnapshot, cfg: BuildConfig, *, workdir: Path
    ) -> BuildResult: ...


class _PhaseFailed(TransientError):
    def __init__(self, phase: str, returncode: int, output: str) -> None:
        super().__init__(f"phase {phase} exited with {returncode}")
        self.phase = phase
        self.returncode = returncode
        self.output = output


def _phase_script(commands: tuple[str, ...], exported: tuple[str, ...]) -> str:
    lines = ["set -e", *commands, ': > "$PIPELINE_EXPORTS"']
    for name in exported:
        lines.append(
            f"printf '%s=%s\\n' {name} \"${{{name}:-}}\" >> \"$PIPELINE_EXPORTS\""
        )
    return "\n".join(lines) + "\n"


def _read_exports(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        name, sep, value = line.partition("=")
        if sep and value:
            out[name] = value
    return out


class LocalBuildRunner:
    """
    Runs the build phases of a source checkout with the local shell.

    The image tag is the resolved source version unless the phases export the
    tag variable themselves. A successful build pushes the image to the
    repository and writes imagedefinitions.json.
    """

    def __init__(self, repository: LocalImageRepository, *, shell: str = "/bin/sh") -> None:
        self.repository = repository
        self.shell = shell

    def _run_phases(
        self, cfg: BuildConfig, *, workdir: Path, env: dict[str, str]
    ) -> tuple[dict[str, str], list[PhaseResult], str]:
        exports_path = workdir.parent / f"{workdir.name}{_EXPORTS_FILE}"
        exported: dict[str, str] = {}
        results: list[PhaseResult] = []
        output: list[str] = []

        for phase in PHASES:
            commands = tuple(cfg.phases.get(phase, ()))
            if not commands:
                continue
            safe_unlink(exports_path)
            phase_env = {**env, **exported, "PIPELINE_EXPORTS": str(exports_path)}
            t0 = monotonic_ms()
            try:
                proc = subprocess.run(
                    [self.shell, "-c", _phase_script(commands, cfg.exported_variables)],
                    cwd=workdir,
                    env=phase_env,
                    capture_output=True,
                    text=True,
                    timeout=cfg.timeout_s,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise _PhaseFailed(phase, -1, f"timed out after {e.timeout}s") from e

            output.append(f"## {phase}\n{proc.stdout}{proc.stderr}")
            results.append(
                PhaseResult(
                    phase=phase,
                    returncode=proc.returncode,
                    duration_ms=monotonic_ms() - t0,
                )
            )
            if proc.returncode != 0:
                raise _PhaseFailed(phase, proc.returncode, proc.stderr.strip())
            exported.update(_read_exports(exports_path))

        safe_unlink(exports_path)
        return exported, results, "".join(output)

    def build(
        self, source: SourceSnapshot, cfg: BuildConfig, *, workdir: Path
    ) -> BuildResult:
        workdir = Path(workdir)
        remove_tree(workdir)
        workdir.mkdir(parents=True, exist_ok=True)
        write_tree(workdir, source.files)

        env = {
            **os.environ,
            **dict(cfg.env),
            "REPOSITORY_URI": self.repository.repository_uri,
            "RESOLVED_SOURCE_VERSION": source.version,
        }
        if cfg.runtime:
            env["BUILD_RUNTIME"] = cfg.runtime

        def _attempt() -> tuple[dict[str, str], list[PhaseResult], str]:
            return self._run_phases(cfg, workdir=workdir, env=env)

        def _exhausted(attempts: int, last: BaseException) -> Exception:
            detail = getattr(last, "output", "") or ""
            msg = f"Build of {source.coordinate} failed after {attempts} attempt(s): {last}"
            if detail:
                msg += f"\n{detail[-2000:]}"
            return BuildFailed(msg)

        exported, phases, output = run_with_retries(
            _attempt,
            what=f"build {source.coordinate}",
            policy=RetryPolicy(max_attempts=cfg.retries + 1, base_s=cfg.retry_backoff_s),
            retry_on=(_PhaseFailed,),
            on_exhausted=_exhausted,
        )

        tag = exported.get(cfg.tag_variable) or source.version
        exported[cfg.tag_variable] = tag
        missing = [v for v in cfg.exported_variables if v not in exported]
        if missing:
            raise BuildFailed(f"Build did not export {missing}")

        digest = "sha256:" + sha256_text(
            f"{source.version}\n{stable_json_bytes(dict(cfg.phases), indent=None).decode()}"
        )
        image_uri = self.repository.push(tag, digest)

        files = {
            IMAGE_DEFINITIONS: stable_json_bytes(
                [{"imageUri": image_uri, "name": cfg.container_name}]
            )
            + b"\n",
            BUILD_LOG: output.encode("utf-8"),
        }

        log.info(
            "build.done",
            source=str(source.coordinate),
            image=image_uri,
            phases=[p.phase for p in phases],
        )
        return BuildResult(
            image_uri=image_uri,
            tag=tag,
            digest=digest,
            source_version=source.version,
            exported={k: exported[k] for k in cfg.exported_variables},
            files=files,
            phases=tuple(phases),
        )
