from .config import Settings, load_settings
from .errors import (
    ActionContractError,
    ArtifactAlreadyWritten,
    ArtifactError,
    BuildFailed,
    DefinitionError,
    DeploymentError,
    DuplicateDeclaration,
    DuplicateExport,
    InputNotReady,
    MissingExport,
    MissingOutput,
    NeverExported,
    NotProduced,
    ParameterError,
    ParameterMismatch,
    PipelineError,
    QuotaExceeded,
    ResourceConflict,
    Rollback,
    SourceUnavailable,
    StageError,
    TemplateError,
    TemplateValidationError,
    TransientError,
    UndeclaredExport,
    UndeclaredOutput,
    UndeclaredParameter,
    UnresolvedPlaceholder,
    stage_error_from_exc,
)
from .events import Event, EventSink, EventType, make_event
from .fs import (
    atomic_dir_commit,
    atomic_write_bytes,
    atomic_write_text,
    ensure_parent,
    make_tmp_dir_for,
    read_tree,
    relpath_posix,
    remove_tree,
    safe_unlink,
    write_tree,
)
from .hashing import content_hash, sha256_bytes, sha256_text
from .json import atomic_write_json, read_json, stable_json_bytes, stable_json_dumps
from .logging import ILogger, bind, configure_logging, get_logger
from .paths import RunLayout, StateLayout
from .provenance import RunProvenance, new_run_id
from .time import format_duration_ms, monotonic_ms, utc_now_iso

JsonPrimitive = str | int | float | bool | None
JsonValue = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]
JsonObject = dict[str, JsonValue]

__all__ = [
    "ActionContractError",
    "ArtifactAlreadyWritten",
    "ArtifactError",
    "BuildFailed",
    "DefinitionError",
    "DeploymentError",
    "DuplicateDeclaration",
    "DuplicateExport",
    "Event",
    "EventSink",
    "EventType",
    "ILogger",
    "InputNotReady",
    "JsonObject",
    "JsonValue",
    "MissingExport",
    "MissingOutput",
    "NeverExported",
    "NotProduced",
    "ParameterError",
    "ParameterMismatch",
    "PipelineError",
    "QuotaExceeded",
    "ResourceConflict",
    "Rollback",
    "RunLayout",
    "RunProvenance",
    "Settings",
    "SourceUnavailable",
    "StageError",
    "StateLayout",
    "TemplateError",
    "TemplateValidationError",
    "TransientError",
    "UndeclaredExport",
    "UndeclaredOutput",
    "UndeclaredParameter",
    "UnresolvedPlaceholder",
    "atomic_dir_commit",
    "atomic_write_bytes",
    "atomic_write_json",
    "atomic_write_text",
    "bind",
    "configure_logging",
    "content_hash",
    "ensure_parent",
    "format_duration_ms",
    "get_logger",
    "load_settings",
    "make_event",
    "make_tmp_dir_for",
    "monotonic_ms",
    "new_run_id",
    "read_json",
    "read_tree",
    "relpath_posix",
    "remove_tree",
    "safe_unlink",
    "sha256_bytes",
    "sha256_text",
    "stable_json_bytes",
    "stable_json_dumps",
    "stage_error_from_exc",
    "utc_now_iso",
    "write_tree",
]
