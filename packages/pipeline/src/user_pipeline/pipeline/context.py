from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from user_pipeline.artifacts import ArtifactStore
from user_pipeline.core import EventSink, EventType, ILogger, RunLayout, make_event
from user_pipeline.params import DeferredParameterRegistry


@dataclass(slots=True)
class EventEmitter:
    """
    Writes events to the run's events.jsonl and mirrors them to the debug log.
    """

    run_id: str
    sink: EventSink
    logger: ILogger

    def __call__(
        self,
        event: EventType | str,
        *,
        stage: str | None = None,
        action: str | None = None,
        **kw: Any,
    ) -> None:
        event_value = event.value if isinstance(event, EventType) else str(event)
        # Keep event chatter at debug level to leave console logs readable.
        self.logger.debug(event_value, stage=stage, action=action, **kw)
        self.sink.emit(
            make_event(
                event_type=event_value,
                run_id=self.run_id,
                stage=stage,
                action=action,
                **kw,
            )
        )


@dataclass(slots=True)
class RunContext:
    """
    Context shared across stages and actions for a single pipeline run.
    """

    run_id: str
    layout: RunLayout
    state_root: Path
    logger: ILogger
    emit: EventEmitter
    store: ArtifactStore
    params: DeferredParameterRegistry

    resolve_timeout_s: float | None = None
    artifact_timeout_s: float | None = None

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    _cancelled: threading.Event = field(default_factory=threading.Event)
    _cancel_reason: list[str] = field(default_factory=list)

    @property
    def run_dir(self) -> Path:
        return self.layout.run_dir

    def stage_logger(self, stage: str) -> ILogger:
        return self.logger.bind(stage=stage)

    def action_logger(self, stage: str, action: str) -> ILogger:
        return self.logger.bind(stage=stage, action=action)

    def cancel(self, reason: str) -> bool:
        """
        Request cancellation. Returns False if the run was already cancelled.
        """
        if self._cancelled.is_set():
            return False
        self._cancel_reason.append(reason)
        self._cancelled.set()
        self.emit(EventType.RUN_CANCEL, reason=reason)
        self.params.cancel(reason)
        self.store.abandon(f"cancelled: {reason}")
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason[0] if self._cancel_reason else None
