from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """
    A fully resolved template, ready to hand to the template engine.

    Built fresh for every deploy; the template it came from is untouched.
    """

    environment: str
    template_sha256: str
    parameters: dict[str, str]
    body: dict[str, Any]
    fingerprint: str


@dataclass(frozen=True, slots=True)
class EnvironmentRef:
    name: str
    fingerprint: str
    template_sha256: str
    parameters: dict[str, str] = field(default_factory=dict)
    version: int = 0
    changed: bool = True
    outputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fingerprint": self.fingerprint,
            "template_sha256": self.template_sha256,
            "parameters": dict(self.parameters),
            "version": self.version,
            "changed": self.changed,
            "outputs": dict(self.outputs),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any], *, changed: bool = True) -> "EnvironmentRef":
        return cls(
            name=d["name"],
            fingerprint=d["fingerprint"],
            template_sha256=d["template_sha256"],
            parameters=dict(d.get("parameters", {})),
            version=int(d.get("version", 0)),
            changed=changed,
            outputs=dict(d.get("outputs", {})),
        )


class TemplateEngine(Protocol):
    """
    Applies execution requests to named environments.

    `apply` is create-or-update; it either leaves the environment at the
    requested state or raises and keeps the prior stable state.
    """

    def current(self, name: str) -> Optional[EnvironmentRef]: ...

    def apply(self, request: ExecutionRequest) -> EnvironmentRef: ...
