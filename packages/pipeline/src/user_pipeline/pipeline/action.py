from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from user_pipeline.artifacts import ArtifactPayload, ArtifactRef
from user_pipeline.core import (
    ActionContractError,
    DuplicateExport,
    EventType,
    ILogger,
    InputNotReady,
    MissingExport,
    MissingOutput,
    StageError,
    UndeclaredExport,
    UndeclaredOutput,
    format_duration_ms,
    monotonic_ms,
    stage_error_from_exc,
    utc_now_iso,
)
from user_pipeline.params import ParameterHandle

from .context import RunContext
from .types import Status

ActionFn = Callable[["ActionContext"], dict[str, Any] | None]


def find_handles(node: Any) -> list[ParameterHandle]:
    """Collect every ParameterHandle nested inside an action config."""
    if isinstance(node, ParameterHandle):
        return [node]
    if isinstance(node, Mapping):
        out: list[ParameterHandle] = []
        for v in node.values():
            out.extend(find_handles(v))
        return out
    if isinstance(node, (list, tuple)):
        out = []
        for v in node:
            out.extend(find_handles(v))
        return out
    return []


@dataclass(frozen=True, slots=True)
class ActionSpec:
    """
    A unit of work bound to one input artifact set and one output artifact set.

    `exports` names the deferred parameters this action writes; the values are
    committed to the registry only once the action succeeded.
    """

    action_id: str
    fn: ActionFn
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    exports: tuple[str, ...] = ()
    config: Mapping[str, Any] = field(default_factory=dict)
    retain_outputs: bool = False

    def handle(self, name: str) -> ParameterHandle:
        """
        Definition-time declaration of a deferred parameter exported by this
        action, usable in another action's config.
        """
        if name not in self.exports:
            raise ActionContractError(
                f"Action {self.action_id} does not export {name!r}"
            )
        return ParameterHandle(name=name, exporter=self.action_id)

    def handles(self) -> list[ParameterHandle]:
        return find_handles(self.config)


@dataclass(slots=True)
class ActionResult:
    action: str
    status: Status
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    inputs_ready_at_start: bool = True
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    exports: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    error: Optional[StageError] = None


class ActionContext:
    """
    What an action function sees while it runs.
    """

    def __init__(self, *, run: RunContext, spec: ActionSpec, stage_id: str) -> None:
        self.run = run
        self.spec = spec
        self.stage_id = stage_id
        self.log: ILogger = run.action_logger(stage_id, spec.action_id)
        self.written: dict[str, ArtifactRef] = {}
        self.exports: dict[str, str] = {}

    @property
    def action_id(self) -> str:
        return self.spec.action_id

    @property
    def config(self) -> Mapping[str, Any]:
        return self.spec.config

    @property
    def meta(self) -> dict[str, Any]:
        return self.run.meta

    def emit(self, event: EventType | str, **kw: Any) -> None:
        self.run.emit(event, stage=self.stage_id, action=self.action_id, **kw)

    def input(self, slot: str) -> ArtifactPayload:
        if slot not in self.spec.inputs:
            raise ActionContractError(
                f"Action {self.action_id} did not declare input {slot!r}"
            )
        return self.run.store.get(slot, timeout=self.run.artifact_timeout_s)

    def write_output(
        self,
        slot: str,
        files: Mapping[str, bytes],
        *,
        meta: Mapping[str, Any] | None = None,
    ) -> ArtifactRef:
        if slot not in self.spec.outputs:
            raise UndeclaredOutput(
                f"Action {self.action_id} did not declare output {slot!r}"
            )
        ref = self.run.store.put(slot, files, meta=meta)
        self.written[slot] = ref
        return ref

    def export(self, name: str, value: str) -> None:
        """
        Buffer an export; the runner commits it once the action succeeded.
        """
        if name not in self.spec.exports:
            raise UndeclaredExport(
                f"Action {self.action_id} did not declare export {name!r}"
            )
        if name in self.exports:
            raise DuplicateExport(
                f"Action {self.action_id} exported {name!r} twice"
            )
        self.exports[name] = value

    def resolve(self, ref: ParameterHandle | str) -> str:
        name = ref.name if isinstance(ref, ParameterHandle) else ref
        return self.run.params.resolve(
            name, timeout=self.run.resolve_timeout_s, reader=self.action_id
        )

    def resolve_config(self, node: Any) -> Any:
        """Return a copy of `node` with every ParameterHandle replaced by its value."""
        if isinstance(node, ParameterHandle):
            return self.resolve(node)
        if isinstance(node, Mapping):
            return {k: self.resolve_config(v) for k, v in node.items()}
        if isinstance(node, list):
            return [self.resolve_config(v) for v in node]
        if isinstance(node, tuple):
            return tuple(self.resolve_config(v) for v in node)
        return node


def _check_contract(actx: ActionContext) -> None:
    spec = actx.spec
    missing_out = [s for s in spec.outputs if s not in actx.written]
    if missing_out:
        raise MissingOutput(f"Action {spec.action_id} did not write {missing_out}")
    missing_exp = [n for n in spec.exports if n not in actx.exports]
    if missing_exp:
        raise MissingExport(f"Action {spec.action_id} did not export {missing_exp}")


def run_action(*, ctx: RunContext, stage_id: str, spec: ActionSpec) -> ActionResult:
    action_id = spec.action_id
    actx = ActionContext(run=ctx, spec=spec, stage_id=stage_id)
    log = actx.log

    t0 = monotonic_ms()
    started_at = utc_now_iso()

    warnings: list[str] = []
    metrics: dict[str, Any] = {}

    ready = {slot: ctx.store.is_ready(slot) for slot in spec.inputs}
    inputs_ready = all(ready.values())
    inputs: dict[str, str] = {}

    actx.emit(EventType.ACTION_START, inputs_ready=inputs_ready)
    log.info("Action starting", inputs=list(spec.inputs), outputs=list(spec.outputs))

    try:
        if not inputs_ready:
            not_ready = sorted(s for s, ok in ready.items() if not ok)
            raise InputNotReady(f"Action {action_id} started before {not_ready} were ready")
        for slot in spec.inputs:
            inputs[slot] = ctx.store.get(slot).ref.sha256

        out = spec.fn(actx) or {}
        if not isinstance(out, dict):
            raise TypeError(
                f"Action {action_id} returned {type(out).__name__}, expected dict or None"
            )

        if "_warnings" in out:
            w = out.pop("_warnings")
            if isinstance(w, list):
                warnings.extend(str(x) for x in w)

        if "_metrics" in out:
            m = out.pop("_metrics")
            if isinstance(m, dict):
                metrics.update(m)

        _check_contract(actx)

        # exports become visible only after every output is in place, all or none
        ctx.params.export_all(
            {name: actx.exports[name] for name in spec.exports}, exporter=action_id
        )

        for w in warnings:
            actx.emit(EventType.ACTION_WARN, message=w)
            log.warning(w)

        if metrics:
            actx.emit(EventType.ACTION_METRICS, metrics=metrics)

        duration = monotonic_ms() - t0
        actx.emit(EventType.ACTION_SUCCESS, duration_ms=duration)
        log.info(
            "Action succeeded",
            duration=format_duration_ms(duration),
            artifacts=len(actx.written),
            exports=sorted(actx.exports.keys()),
            outputs=sorted(out.keys()),
        )

        return ActionResult(
            action=action_id,
            status=Status.SUCCEEDED,
            started_at_utc=started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=duration,
            inputs_ready_at_start=inputs_ready,
            inputs=inputs,
            outputs=out,
            exports=dict(actx.exports),
            metrics=metrics,
            warnings=warnings,
            artifacts=list(actx.written.values()),
        )

    except Exception as e:
        duration = monotonic_ms() - t0
        reason = f"{action_id} failed: {type(e).__name__}: {e}"

        # nothing this action wrote may be consumed
        ctx.store.fail_producer(action_id, reason)
        ctx.params.fail_exporter(action_id, reason)

        actx.emit(
            EventType.ACTION_FAILED,
            duration_ms=duration,
            exc_type=type(e).__name__,
            message=str(e),
        )
        log.error(
            "Action failed",
            duration=format_duration_ms(duration),
            error=str(e),
            exc_type=type(e).__name__,
        )

        return ActionResult(
            action=action_id,
            status=Status.FAILED,
            started_at_utc=started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=duration,
            inputs_ready_at_start=inputs_ready,
            inputs=inputs,
            exports={},
            metrics=metrics,
            warnings=warnings,
            artifacts=list(actx.written.values()),
            error=stage_error_from_exc(e),
        )

    finally:
        for slot in spec.inputs:
            ctx.store.mark_consumed(slot, action_id)
