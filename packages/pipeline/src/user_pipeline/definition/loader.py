from __future__ import annotations

from pathlib import Path

import jsonschema
from pydantic import TypeAdapter, ValidationError

from user_pipeline.core import DefinitionError, read_json

from .models import PipelineDefinition

DEFINITION_FILE = "pipeline.json"


def schema_for_pipeline_definition() -> dict:
    return TypeAdapter(PipelineDefinition).json_schema()


def parse_definition(raw: dict) -> PipelineDefinition:
    try:
        jsonschema.validate(instance=raw, schema=schema_for_pipeline_definition())
    except jsonschema.ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise DefinitionError(f"{DEFINITION_FILE} at {path}: {e.message}") from e
    try:
        return PipelineDefinition.model_validate(raw)
    except ValidationError as e:
        raise DefinitionError(f"Invalid {DEFINITION_FILE}:\n{e}") from e


def load_definition(path: Path) -> PipelineDefinition:
    """
    Load a pipeline definition file, or `pipeline.json` inside a directory.
    """
    p = Path(path)
    if p.is_dir():
        p = p / DEFINITION_FILE
    if not p.is_file():
        raise DefinitionError(f"Pipeline definition not found: {p}")
    return parse_definition(read_json(p))
