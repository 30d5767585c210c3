from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional

from user_pipeline.core import (
    EventType,
    StageError,
    format_duration_ms,
    monotonic_ms,
    utc_now_iso,
)

from .action import ActionResult, ActionSpec, run_action
from .context import RunContext
from .types import Status


@dataclass(frozen=True, slots=True)
class StageSpec:
    """
    An ordered group of actions that all must complete before the next stage.
    """

    stage_id: str
    actions: tuple[ActionSpec, ...]

    def exports(self) -> list[str]:
        return [name for a in self.actions for name in a.exports]


@dataclass(slots=True)
class StageResult:
    stage: str
    status: Status
    started_at_utc: Optional[str] = None
    finished_at_utc: Optional[str] = None
    duration_ms: int = 0

    actions: list[ActionResult] = field(default_factory=list)
    error: Optional[StageError] = None

    @classmethod
    def pending(cls, stage_id: str) -> "StageResult":
        return cls(stage=stage_id, status=Status.PENDING)


def _first_error(results: list[ActionResult]) -> StageError | None:
    for r in results:
        if r.error is not None:
            return r.error
    return None


def run_stage(
    *,
    ctx: RunContext,
    stage: StageSpec,
    max_workers: int = 4,
    index: int | None = None,
    total: int | None = None,
) -> StageResult:
    """
    Run every action of a stage concurrently and wait for all of them.

    The stage succeeds only if every action succeeded and the run was not
    cancelled meanwhile.
    """
    stage_id = stage.stage_id
    log = ctx.stage_logger(stage_id)

    t0 = monotonic_ms()
    started_at = utc_now_iso()
    position = f"{index}/{total}" if index is not None and total is not None else None

    ctx.emit(EventType.STAGE_START, stage=stage_id)
    log.info(
        "Stage starting",
        position=position,
        actions=[a.action_id for a in stage.actions],
    )

    order = {a.action_id: i for i, a in enumerate(stage.actions)}
    results: list[ActionResult] = []

    workers = max(1, min(max_workers, len(stage.actions)))
    with ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix=f"stage-{stage_id}"
    ) as pool:
        futures = [
            pool.submit(run_action, ctx=ctx, stage_id=stage_id, spec=a)
            for a in stage.actions
        ]
        for fut in as_completed(futures):
            r = fut.result()
            results.append(r)
            if r.status is Status.FAILED and r.error is not None:
                # siblings blocked on any export of this stage wake up now
                ctx.params.fail(
                    stage.exports(), f"stage {stage_id} failed: {r.error.message}"
                )

    results.sort(key=lambda r: order[r.action])

    failed = [r for r in results if r.status is Status.FAILED]
    error = _first_error(failed)
    if not failed and ctx.cancelled:
        error = StageError(
            exc_type="Cancelled",
            message=f"run cancelled: {ctx.cancel_reason}",
            traceback="",
        )

    status = Status.FAILED if error is not None else Status.SUCCEEDED
    duration = monotonic_ms() - t0

    if status is Status.FAILED:
        assert error is not None
        # anything this stage still owes will never arrive
        ctx.params.fail(stage.exports(), f"stage {stage_id} failed: {error.message}")
        ctx.emit(
            EventType.STAGE_FAILED,
            stage=stage_id,
            duration_ms=duration,
            failed_actions=[r.action for r in failed],
            message=error.message,
        )
        log.error(
            "Stage failed",
            position=position,
            duration=format_duration_ms(duration),
            failed_actions=[r.action for r in failed],
            error=error.message,
        )
    else:
        ctx.emit(EventType.STAGE_SUCCESS, stage=stage_id, duration_ms=duration)
        log.info(
            "Stage succeeded",
            position=position,
            duration=format_duration_ms(duration),
            actions=len(results),
        )

    return StageResult(
        stage=stage_id,
        status=status,
        started_at_utc=started_at,
        finished_at_utc=utc_now_iso(),
        duration_ms=duration,
        actions=results,
        error=error,
    )

