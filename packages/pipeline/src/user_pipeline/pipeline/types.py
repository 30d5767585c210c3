from __future__ import annotations

from enum import Enum

from user_pipeline.artifacts.store import ArtifactRef
from user_pipeline.core.events import Event


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


__all__ = ["ArtifactRef", "Event", "Status"]
