from __future__ import annotations

import os
import platform
import uuid
from dataclasses import asdict, dataclass, field
from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION = "user-pipeline"


def new_run_id() -> str:
    return uuid.uuid4().hex


def package_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        # running from a source tree that was never installed
        return "0+unknown"


@dataclass(frozen=True, slots=True)
class RunProvenance:
    """Who ran what, where: stamped on the run report and the run.start event."""

    run_id: str
    pipeline: str
    started_at_utc: str
    tool_version: str = field(default_factory=package_version)
    hostname: str = field(default_factory=platform.node)
    pid: int = field(default_factory=os.getpid)
    python: str = field(default_factory=platform.python_version)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
