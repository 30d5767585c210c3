from .action import ActionContext, ActionFn, ActionResult, ActionSpec, find_handles, run_action
from .context import EventEmitter, RunContext
from .report import RunReport, build_run_report
from .runner import PipelineRunner, RunnerConfig, validate_definition
from .stage import StageResult, StageSpec, run_stage
from .types import ArtifactRef, Event, Status

__all__ = [
    "ActionContext",
    "ActionFn",
    "ActionResult",
    "ActionSpec",
    "ArtifactRef",
    "Event",
    "EventEmitter",
    "PipelineRunner",
    "RunContext",
    "RunReport",
    "RunnerConfig",
    "StageResult",
    "StageSpec",
    "Status",
    "build_run_report",
    "find_handles",
    "run_action",
    "run_stage",
    "validate_definition",
]
