from __future__ import annotations

import json
from dataclasses import dataclass
from functools import cached_property
from typing import Any

from user_pipeline.contracts import validate_template_dict, validate_template_json
from user_pipeline.core import sha256_bytes, stable_json_bytes

TEMPLATE_SUFFIX = ".template.json"


@dataclass(frozen=True)
class Template:
    """
    Immutable, serialized description of a deployable environment.

    The serialized bytes are the identity of the template; `body` hands out a
    fresh parsed copy on every call so callers can never mutate the stored
    version.
    """

    stack_name: str
    source: bytes

    @classmethod
    def from_dict(cls, stack_name: str, body: dict[str, Any]) -> "Template":
        validate_template_dict(body)
        return cls(stack_name=stack_name, source=stable_json_bytes(body) + b"\n")

    @classmethod
    def from_bytes(cls, stack_name: str, raw: bytes) -> "Template":
        validate_template_json(raw)
        return cls(stack_name=stack_name, source=bytes(raw))

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.source)

    @cached_property
    def placeholders(self) -> tuple[str, ...]:
        return tuple(sorted(self.body.get("Parameters", {}).keys()))

    @cached_property
    def sha256(self) -> str:
        return sha256_bytes(self.source)

    @property
    def file_name(self) -> str:
        return f"{self.stack_name}{TEMPLATE_SUFFIX}"

    def resource_count(self) -> int:
        return len(self.body.get("Resources", {}))
