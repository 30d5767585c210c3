from __future__ import annotations

import json
from importlib.resources import files
from typing import Any, Final

from user_pipeline.core import PipelineError

PKG: Final[str] = "user_pipeline.contracts"

TEMPLATE_SCHEMA_REL: Final[str] = "schema/template.schema.json"


class ContractsResourceError(PipelineError):
    """
    Raised when a shipped schema file cannot be located or read.

    Signals a broken or mispackaged install rather than a bad user path.
    """


def read_json(rel_path: str) -> dict[str, Any]:
    try:
        raw = files(PKG).joinpath(rel_path).read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ContractsResourceError(f"Missing contracts resource: {rel_path}") from e
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ContractsResourceError(
            f"Invalid JSON in contracts resource: {rel_path}: {e}"
        ) from e
    if not isinstance(obj, dict):
        raise ContractsResourceError(
            f"Expected JSON object in {rel_path}, got {type(obj).__name__}"
        )
    return obj


def template_schema() -> dict[str, Any]:
    """
    JSON Schema for synthesized deployment templates
    """
    return read_json(TEMPLATE_SCHEMA_REL)
