from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import structlog

from user_pipeline.core import (
    DuplicateDeclaration,
    DuplicateExport,
    EventType,
    NeverExported,
    ParameterError,
    UndeclaredParameter,
    atomic_write_json,
    utc_now_iso,
)

log = structlog.get_logger(__name__)

EmitFn = Callable[..., None]


class ParameterState(str, Enum):
    DECLARED = "declared"
    EXPORTED = "exported"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ParameterHandle:
    """
    Lazily-resolved reference to a deferred parameter.

    Handles are created at definition time, before any value exists, and can
    be stored in another action's configuration. The value is only read when
    the consuming action calls `resolve`.
    """

    name: str
    exporter: str

    def resolve(
        self, registry: "DeferredParameterRegistry", *, timeout: float | None = None
    ) -> str:
        return registry.resolve(self.name, timeout=timeout)


@dataclass(slots=True)
class _Param:
    name: str
    exporter: str
    state: ParameterState = ParameterState.DECLARED
    value: str | None = None
    exported_at_utc: str | None = None
    reason: str | None = None
    readers: set[str] = field(default_factory=set)


class DeferredParameterRegistry:
    """
    Named write-once values shared by every action of a run.

    export() writes a value exactly once; resolve() blocks until the value is
    exported and raises NeverExported as soon as the value can no longer
    arrive (exporter failed, stage failed, run cancelled, timeout).
    """

    def __init__(
        self,
        *,
        run_id: str,
        emit: EmitFn | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self.run_id = run_id
        self._emit = emit
        self._default_timeout = default_timeout
        self._params: dict[str, _Param] = {}
        self._cond = threading.Condition()
        self._cancelled: str | None = None

    def declare(self, name: str, exporter: str) -> ParameterHandle:
        if not name:
            raise ValueError("Deferred parameter name must not be empty")
        with self._cond:
            existing = self._params.get(name)
            if existing is not None:
                raise DuplicateDeclaration(
                    f"Parameter {name!r} already declared by {existing.exporter!r}"
                )
            self._params[name] = _Param(name=name, exporter=exporter)
        return ParameterHandle(name=name, exporter=exporter)

    def handle(self, name: str) -> ParameterHandle:
        with self._cond:
            p = self._get(name)
            return ParameterHandle(name=p.name, exporter=p.exporter)

    def _get(self, name: str) -> _Param:
        try:
            return self._params[name]
        except KeyError as exc:
            raise UndeclaredParameter(f"Parameter {name!r} was never declared") from exc

    def declared(self) -> list[str]:
        with self._cond:
            return sorted(self._params.keys())

    def exported_by(self, exporter: str) -> list[str]:
        with self._cond:
            return sorted(p.name for p in self._params.values() if p.exporter == exporter)

    def state(self, name: str) -> ParameterState:
        with self._cond:
            return self._get(name).state

    def _exportable(self, name: str, value: str, exporter: str | None) -> _Param:
        if not isinstance(value, str) or not value:
            raise ValueError(f"Parameter {name!r} needs a non-empty string value")
        p = self._get(name)
        if exporter is not None and exporter != p.exporter:
            raise ParameterError(
                f"Parameter {name!r} can only be exported by {p.exporter!r}, "
                f"not {exporter!r}"
            )
        if p.state is ParameterState.EXPORTED:
            raise DuplicateExport(
                f"Parameter {name!r} was already exported in run {self.run_id}"
            )
        if p.state is ParameterState.FAILED:
            raise NeverExported(f"Parameter {name!r} already failed: {p.reason}")
        return p

    def export(self, name: str, value: str, *, exporter: str | None = None) -> None:
        self.export_all({name: value}, exporter=exporter)

    def export_all(self, values: Mapping[str, str], *, exporter: str | None = None) -> None:
        """
        Export several parameters at once. Every name is checked before any
        value is committed, so a rejected batch leaves all of them untouched.
        """
        with self._cond:
            batch = [(self._exportable(n, v, exporter), v) for n, v in values.items()]
            now = utc_now_iso()
            for p, value in batch:
                p.value = value
                p.exported_at_utc = now
                p.state = ParameterState.EXPORTED
            if batch:
                self._cond.notify_all()

        for p, value in batch:
            log.debug("param.exported", name=p.name, exporter=p.exporter)
            if self._emit is not None:
                self._emit(EventType.PARAM_EXPORTED, action=p.exporter, name=p.name, value=value)

    def resolve(
        self,
        name: str,
        *,
        timeout: float | None = None,
        reader: str | None = None,
    ) -> str:
        wait_s = timeout if timeout is not None else self._default_timeout
        with self._cond:
            p = self._get(name)
            done = self._cond.wait_for(
                lambda: p.state is not ParameterState.DECLARED, timeout=wait_s
            )
            if not done:
                raise NeverExported(f"Parameter {name!r} not exported within {wait_s} s")
            if p.state is ParameterState.FAILED:
                raise NeverExported(f"Parameter {name!r} will never be exported: {p.reason}")
            assert p.value is not None
            if reader is not None:
                p.readers.add(reader)
            value = p.value

        if self._emit is not None and reader is not None:
            self._emit(EventType.PARAM_RESOLVED, action=reader, name=name)
        return value

    def fail(self, names: Iterable[str], reason: str) -> list[str]:
        """Mark still-pending parameters as failed and wake their readers."""
        failed: list[str] = []
        with self._cond:
            for name in names:
                p = self._get(name)
                if p.state is ParameterState.DECLARED:
                    p.state = ParameterState.FAILED
                    p.reason = reason
                    failed.append(name)
            if failed:
                self._cond.notify_all()

        for name in failed:
            log.debug("param.failed", name=name, reason=reason)
            if self._emit is not None:
                self._emit(EventType.PARAM_FAILED, name=name, reason=reason)
        return failed

    def fail_exporter(self, exporter: str, reason: str) -> list[str]:
        return self.fail(self.exported_by(exporter), reason)

    def cancel(self, reason: str) -> list[str]:
        with self._cond:
            self._cancelled = reason
        return self.fail(self.declared(), f"run cancelled: {reason}")

    @property
    def cancelled(self) -> str | None:
        return self._cancelled

    def snapshot(self) -> dict[str, str]:
        with self._cond:
            return {
                name: p.value
                for name, p in sorted(self._params.items())
                if p.state is ParameterState.EXPORTED and p.value is not None
            }

    def to_dict(self) -> dict[str, Any]:
        with self._cond:
            return {
                "run_id": self.run_id,
                "parameters": {
                    name: {
                        "exporter": p.exporter,
                        "state": p.state.value,
                        "value": p.value,
                        "exported_at_utc": p.exported_at_utc,
                        "reason": p.reason,
                        "readers": sorted(p.readers),
                    }
                    for name, p in sorted(self._params.items())
                },
            }

    def write_snapshot(self, path: Path) -> None:
        """Persist the resolved-parameter set of this run for audit."""
        atomic_write_json(Path(path), self.to_dict())
