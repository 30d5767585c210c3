from __future__ import annotations

import json
import os
import socket
import threading
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .time import utc_now_iso


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_CANCEL = "run.cancel"
    RUN_FINISH = "run.finish"

    STAGE_START = "stage.start"
    STAGE_SUCCESS = "stage.success"
    STAGE_FAILED = "stage.failed"

    ACTION_START = "action.start"
    ACTION_WARN = "action.warn"
    ACTION_METRICS = "action.metrics"
    ACTION_SUCCESS = "action.success"
    ACTION_FAILED = "action.failed"

    ARTIFACT_WRITTEN = "artifact.written"
    ARTIFACT_INVALIDATED = "artifact.invalidated"

    PARAM_EXPORTED = "param.exported"
    PARAM_RESOLVED = "param.resolved"
    PARAM_FAILED = "param.failed"

    SOURCE_FETCHED = "source.fetched"
    BUILD_FINISH = "build.finish"
    SYNTH_FINISH = "synth.finish"
    DEPLOY_START = "deploy.start"
    DEPLOY_NOOP = "deploy.noop"
    DEPLOY_FINISH = "deploy.finish"


@dataclass(frozen=True, slots=True)
class Event:
    type: str
    ts_utc: str
    run_id: str
    stage: Optional[str] = None
    action: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    # position in events.jsonl, assigned by the sink
    seq: int = 0


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    stage: Optional[str] = None,
    action: Optional[str] = None,
    **data: Any,
) -> Event:
    return Event(
        type=event_type.value if isinstance(event_type, EventType) else str(event_type),
        ts_utc=utc_now_iso(),
        run_id=run_id,
        stage=stage,
        action=action,
        data=dict(data),
    )


class EventSink:
    """
    Append-only events.jsonl of one run, shared by the worker threads of a
    stage. The first line describes the process the run executes in.
    """

    def __init__(self, path: Path, *, run_id: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seq = 0
        self.emit(
            make_event(
                event_type=EventType.RUN_ENV,
                run_id=run_id,
                hostname=socket.gethostname(),
                pid=os.getpid(),
                cwd=str(Path.cwd()),
            )
        )

    def emit(self, event: Event) -> Event:
        with self._lock:
            self._seq += 1
            event = replace(event, seq=self._seq)
            # values such as paths or enums fall back to str()
            line = json.dumps(asdict(event), ensure_ascii=False, default=str)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        return event

    def read(self) -> list[Event]:
        with self._lock:
            if not self.path.exists():
                return []
            raw = self.path.read_text(encoding="utf-8")
        return [Event(**json.loads(line)) for line in raw.splitlines() if line]
