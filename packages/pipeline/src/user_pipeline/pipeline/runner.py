from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from user_pipeline.artifacts import ArtifactStore
from user_pipeline.core import (
    DefinitionError,
    EventSink,
    EventType,
    ILogger,
    RunLayout,
    RunProvenance,
    StageError,
    configure_logging,
    format_duration_ms,
    get_logger,
    monotonic_ms,
    new_run_id,
    utc_now_iso,
)
from user_pipeline.params import DeferredParameterRegistry

from .action import ActionFn, ActionSpec
from .context import EventEmitter, RunContext
from .report import RunReport, build_run_report
from .stage import StageResult, StageSpec, run_stage
from .types import Status


@dataclass(slots=True)
class RunnerConfig:
    max_workers: int = 4
    resolve_timeout_s: float | None = None
    artifact_timeout_s: float | None = None
    collect_garbage: bool = True


def default_logger() -> ILogger:
    """
    Provide a structlog BoundLogger that satisfies ILogger.
    """
    configure_logging()
    return get_logger("pipeline")


def validate_definition(stages: Sequence[StageSpec]) -> None:
    """
    Check the wiring invariants of a linear stage graph:

      - stage ids and action ids are unique
      - every artifact has exactly one producer
      - every consumed artifact is produced in an earlier stage
      - every deferred parameter is exported by exactly one action
      - every ParameterHandle in a config names an export of an action in an
        earlier stage or a sibling in the same stage
    """
    stage_ids = [s.stage_id for s in stages]
    if len(stage_ids) != len(set(stage_ids)):
        dupes = sorted({x for x in stage_ids if stage_ids.count(x) > 1})
        raise DefinitionError(f"Duplicate stage_id(s): {dupes}")

    action_ids = [a.action_id for s in stages for a in s.actions]
    if len(action_ids) != len(set(action_ids)):
        dupes = sorted({x for x in action_ids if action_ids.count(x) > 1})
        raise DefinitionError(f"Duplicate action_id(s): {dupes}")

    producers: dict[str, tuple[int, str]] = {}
    exporters: dict[str, tuple[int, str]] = {}
    for idx, st in enumerate(stages):
        if not st.actions:
            raise DefinitionError(f"Stage {st.stage_id} has no actions")
        for a in st.actions:
            for slot in a.outputs:
                if slot in producers:
                    raise DefinitionError(
                        f"Artifact {slot!r} produced by both "
                        f"{producers[slot][1]!r} and {a.action_id!r}"
                    )
                producers[slot] = (idx, a.action_id)
            for name in a.exports:
                if name in exporters:
                    raise DefinitionError(
                        f"Parameter {name!r} exported by both "
                        f"{exporters[name][1]!r} and {a.action_id!r}"
                    )
                exporters[name] = (idx, a.action_id)

    for idx, st in enumerate(stages):
        for a in st.actions:
            for slot in a.inputs:
                if slot not in producers:
                    raise DefinitionError(
                        f"Action {a.action_id} consumes {slot!r} which nothing produces"
                    )
                if producers[slot][0] >= idx:
                    raise DefinitionError(
                        f"Action {a.action_id} consumes {slot!r} produced by "
                        f"{producers[slot][1]!r}, which does not run in an earlier stage"
                    )
            for h in a.handles():
                if h.name not in exporters:
                    raise DefinitionError(
                        f"Action {a.action_id} references undeclared parameter {h.name!r}"
                    )
                exp_idx, exp_action = exporters[h.name]
                if exp_action != h.exporter:
                    raise DefinitionError(
                        f"Parameter {h.name!r} is exported by {exp_action!r}, "
                        f"not {h.exporter!r}"
                    )
                if exp_action == a.action_id or exp_idx > idx:
                    raise DefinitionError(
                        f"Action {a.action_id} cannot resolve {h.name!r}: "
                        f"{exp_action!r} does not run before it"
                    )


class PipelineRunner:
    def __init__(
        self,
        *,
        stages: Sequence[StageSpec],
        name: str = "pipeline",
        cfg: RunnerConfig | None = None,
        logger: ILogger | None = None,
    ) -> None:
        self.name = name
        self.stages = list(stages)
        self.cfg = cfg or RunnerConfig()
        self.logger: ILogger = logger or default_logger()
        validate_definition(self.stages)

        self._lock = threading.Lock()
        self._active: RunContext | None = None
        self._pending_cancel: str | None = None

    @staticmethod
    def fn(action_id: str, fn: ActionFn, **kw: Any) -> ActionSpec:
        return ActionSpec(action_id=action_id, fn=fn, **kw)

    def _consumers(self) -> dict[str, tuple[str, ...]]:
        out: dict[str, list[str]] = {}
        for st in self.stages:
            for a in st.actions:
                for slot in a.inputs:
                    out.setdefault(slot, []).append(a.action_id)
        return {k: tuple(v) for k, v in out.items()}

    def _declare(self, store: ArtifactStore, params: DeferredParameterRegistry) -> None:
        consumers = self._consumers()
        for st in self.stages:
            for a in st.actions:
                for slot in a.outputs:
                    store.declare(
                        slot,
                        a.action_id,
                        consumers=consumers.get(slot, ()),
                        retain=a.retain_outputs,
                    )
                for name in a.exports:
                    params.declare(name, a.action_id)

    def cancel(self, reason: str = "cancelled") -> None:
        """
        Cancel the active run: the current stage fails, pending resolve calls
        raise NeverExported and later stages never start.
        """
        with self._lock:
            ctx = self._active
            if ctx is None:
                self._pending_cancel = reason
                return
        ctx.cancel(reason)

    def run(
        self,
        *,
        run_root: Path,
        state_root: Path,
        run_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> tuple[int, RunReport]:
        """
        Execute the pipeline and write into {run_root}/{run_id}/:
          - events.jsonl
          - params.json
          - run_report.json

        Returns: (exit_code, report)
        """
        meta = meta or {}
        rid = run_id or new_run_id()
        layout = RunLayout(root=Path(run_root), run_id=rid)
        layout.ensure_dirs()

        events_path = layout.events_jsonl()
        sink = EventSink(events_path, run_id=rid)
        emit = EventEmitter(run_id=rid, sink=sink, logger=self.logger)

        store = ArtifactStore(layout=layout, emit=emit)
        params = DeferredParameterRegistry(
            run_id=rid, emit=emit, default_timeout=self.cfg.resolve_timeout_s
        )
        self._declare(store, params)

        ctx = RunContext(
            run_id=rid,
            layout=layout,
            state_root=Path(state_root),
            logger=self.logger,
            emit=emit,
            store=store,
            params=params,
            resolve_timeout_s=self.cfg.resolve_timeout_s,
            artifact_timeout_s=self.cfg.artifact_timeout_s,
            meta=meta,
        )

        with self._lock:
            self._active = ctx
            pending_cancel, self._pending_cancel = self._pending_cancel, None
        if pending_cancel is not None:
            ctx.cancel(pending_cancel)

        started_at = utc_now_iso()
        provenance = RunProvenance(run_id=rid, pipeline=self.name, started_at_utc=started_at)
        t0 = monotonic_ms()

        self.logger.info(
            "Pipeline starting",
            pipeline=self.name,
            run_id=rid,
            stages=[s.stage_id for s in self.stages],
            run_dir=str(layout.run_dir),
        )
        emit(EventType.RUN_START, pipeline=self.name, provenance=provenance.to_dict(), **meta)

        results: list[StageResult] = []
        total = len(self.stages)
        try:
            for idx, st in enumerate(self.stages, start=1):
                if ctx.cancelled:
                    results.append(
                        StageResult(
                            stage=st.stage_id,
                            status=Status.FAILED,
                            error=StageError(
                                exc_type="Cancelled",
                                message=f"run cancelled: {ctx.cancel_reason}",
                                traceback="",
                            ),
                        )
                    )
                    break
                res = run_stage(
                    ctx=ctx,
                    stage=st,
                    max_workers=self.cfg.max_workers,
                    index=idx,
                    total=total,
                )
                results.append(res)
                if res.status is Status.FAILED:
                    self.logger.error("Stopping on first failure", stage=st.stage_id)
                    break
        finally:
            with self._lock:
                self._active = None

        # stages after the failure never start
        for st in self.stages[len(results):]:
            results.append(StageResult.pending(st.stage_id))

        if any(r.status is not Status.SUCCEEDED for r in results):
            reason = "pipeline stopped before completion"
            store.abandon(reason)
            params.fail(params.declared(), reason)

        if self.cfg.collect_garbage:
            store.collect_garbage()

        params_path = layout.params_json()
        params.write_snapshot(params_path)

        finished_at = utc_now_iso()
        duration = monotonic_ms() - t0

        report = build_run_report(
            run_id=rid,
            pipeline=self.name,
            started_at_utc=started_at,
            finished_at_utc=finished_at,
            duration_ms=duration,
            stage_results=results,
            parameters=params.snapshot(),
            artifacts=store.refs(),
            events_jsonl=str(events_path),
            params_json=str(params_path),
            meta=meta,
            provenance=provenance.to_dict(),
        )

        report_json = layout.run_report_json()
        report.write_json(report_json)

        emit(
            EventType.RUN_FINISH,
            status=report.status.value,
            failed_stage=report.failed_stage,
            duration_ms=duration,
            report_json=str(report_json),
        )

        self.logger.info(
            "Run complete",
            duration=format_duration_ms(duration),
            report=str(report_json),
            status=report.status.value,
            failed_stage=report.failed_stage,
        )

        exit_code = 0 if report.status is Status.SUCCEEDED else 1
        return exit_code, report
