from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from user_pipeline.core import TemplateValidationError

from .resources import template_schema


@lru_cache(maxsize=1)
def validator() -> Draft202012Validator:
    return Draft202012Validator(template_schema())


def format_errors(errors: Iterable[Any]) -> str:
    lines: list[str] = []
    for e in errors:
        path = (
            ".".join(str(p) for p in e.path) if getattr(e, "path", None) else "<root>"
        )
        lines.append(f"- {path}: {e.message}")
    return "\n".join(lines)


def _refs(node: Any) -> set[str]:
    if isinstance(node, dict):
        if set(node.keys()) == {"Ref"} and isinstance(node["Ref"], str):
            return {node["Ref"]}
        out: set[str] = set()
        for v in node.values():
            out |= _refs(v)
        return out
    if isinstance(node, list):
        out = set()
        for v in node:
            out |= _refs(v)
        return out
    return set()


def validate_template_dict(obj: dict[str, Any]) -> None:
    """
    Validate a template against the shipped JSON schema, then check that every
    Ref points at a declared parameter or resource.
    """
    v = validator()
    errs = sorted(v.iter_errors(obj), key=lambda e: list(getattr(e, "path", [])))
    if errs:
        raise TemplateValidationError(
            "Template validation failed:\n" + format_errors(errs)
        )

    known = set(obj.get("Parameters", {})) | set(obj.get("Resources", {}))
    refs = _refs(obj.get("Resources", {})) | _refs(obj.get("Outputs", {}))
    dangling = sorted(refs - known)
    if dangling:
        raise TemplateValidationError(
            f"Template references undeclared names: {dangling}"
        )

    resources = obj.get("Resources", {})
    for logical_id, res in resources.items():
        for dep in res.get("DependsOn", []):
            if dep not in resources:
                raise TemplateValidationError(
                    f"{logical_id} depends on unknown resource {dep}"
                )


def validate_template_json(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")

    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TemplateValidationError(f"Template is not valid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise TemplateValidationError(
            f"Template must be a JSON object, got {type(obj).__name__}"
        )

    validate_template_dict(obj)
    return obj
