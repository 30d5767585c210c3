from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from user_pipeline.artifacts import ArtifactRef
from user_pipeline.core import StageError, atomic_write_json

from .stage import StageResult
from .types import Status


@dataclass(slots=True)
class RunReport:
    run_id: str
    pipeline: str
    started_at_utc: str
    finished_at_utc: str
    status: Status
    duration_ms: int

    stages: list[StageResult] = field(default_factory=list)
    failed_stage: Optional[str] = None
    failure: Optional[StageError] = None
    parameters: dict[str, str] = field(default_factory=dict)
    # committed, never invalidated outputs by slot; collected payloads included
    artifacts: dict[str, ArtifactRef] = field(default_factory=dict)
    events_jsonl: Optional[str] = None
    params_json: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    provenance: dict[str, Any] = field(default_factory=dict)

    def stage(self, stage_id: str) -> StageResult:
        for s in self.stages:
            if s.stage == stage_id:
                return s
        raise KeyError(stage_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())


def build_run_report(
    *,
    run_id: str,
    pipeline: str,
    started_at_utc: str,
    finished_at_utc: str,
    duration_ms: int,
    stage_results: list[StageResult],
    parameters: dict[str, str],
    events_jsonl: str | None,
    artifacts: dict[str, ArtifactRef] | None = None,
    params_json: str | None,
    meta: dict[str, Any] | None = None,
    provenance: dict[str, Any] | None = None,
) -> RunReport:
    failed = next((s for s in stage_results if s.status is Status.FAILED), None)
    succeeded = failed is None and all(
        s.status is Status.SUCCEEDED for s in stage_results
    )
    return RunReport(
        run_id=run_id,
        pipeline=pipeline,
        started_at_utc=started_at_utc,
        finished_at_utc=finished_at_utc,
        status=Status.SUCCEEDED if succeeded else Status.FAILED,
        duration_ms=duration_ms,
        stages=stage_results,
        failed_stage=failed.stage if failed is not None else None,
        failure=failed.error if failed is not None else None,
        parameters=parameters,
        artifacts=artifacts or {},
        events_jsonl=events_jsonl,
        params_json=params_json,
        meta=meta or {},
        provenance=provenance or {},
    )
