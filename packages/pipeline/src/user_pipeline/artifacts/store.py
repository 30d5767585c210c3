from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

import structlog

from user_pipeline.core import (
    ArtifactAlreadyWritten,
    DefinitionError,
    EventType,
    NotProduced,
    RunLayout,
    atomic_dir_commit,
    atomic_write_json,
    content_hash,
    make_tmp_dir_for,
    read_json,
    read_tree,
    remove_tree,
    utc_now_iso,
    write_tree,
)

log = structlog.get_logger(__name__)

PAYLOAD_DIR = "payload"
SIDECAR = "artifact.json"

EmitFn = Callable[..., None]


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    """
    A reference to a payload written into the artifact store.
    """

    slot: str
    run_id: str
    producer: str
    location: str
    sha256: str
    files: int
    bytes: int


class SlotState(str, Enum):
    DECLARED = "declared"
    READY = "ready"
    INVALID = "invalid"


@dataclass(slots=True)
class _Slot:
    slot: str
    producer: str
    consumers: set[str] = field(default_factory=set)
    retain: bool = False
    state: SlotState = SlotState.DECLARED
    ref: ArtifactRef | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    consumed_by: set[str] = field(default_factory=set)
    collected: bool = False


@dataclass(frozen=True, slots=True)
class ArtifactPayload:
    """
    Read view over a ready artifact.
    """

    ref: ArtifactRef
    path: Path
    meta: dict[str, Any]

    @property
    def files(self) -> dict[str, bytes]:
        return read_tree(self.path)

    def read(self, name: str) -> bytes:
        p = self.path / name
        if not p.is_file():
            raise FileNotFoundError(f"{self.ref.slot} has no file {name!r}")
        return p.read_bytes()

    def read_text(self, name: str) -> str:
        return self.read(name).decode("utf-8")

    def verify(self) -> bool:
        """Recompute the content hash and compare it with the recorded one."""
        return content_hash(self.files) == self.ref.sha256


class ArtifactStore:
    """
    Write-once, multi-reader handoff slots for one pipeline run.

    Every slot is declared with its single producer before the run starts.
    Readers block until the slot is ready and fail with NotProduced once it
    can no longer become ready.
    """

    def __init__(self, *, layout: RunLayout, emit: EmitFn | None = None) -> None:
        self.layout = layout
        self._emit = emit
        self._slots: dict[str, _Slot] = {}
        self._cond = threading.Condition()
        self._abandoned: str | None = None

    @property
    def run_id(self) -> str:
        return self.layout.run_id

    def declare(
        self,
        slot: str,
        producer: str,
        *,
        consumers: tuple[str, ...] = (),
        retain: bool = False,
    ) -> None:
        with self._cond:
            existing = self._slots.get(slot)
            if existing is not None:
                raise DefinitionError(
                    f"Artifact {slot!r} already produced by {existing.producer!r}; "
                    f"{producer!r} cannot produce it too"
                )
            self._slots[slot] = _Slot(
                slot=slot, producer=producer, consumers=set(consumers), retain=retain
            )

    def _get_slot(self, slot: str) -> _Slot:
        try:
            return self._slots[slot]
        except KeyError as exc:
            raise DefinitionError(f"Unknown artifact slot: {slot}") from exc

    def state(self, slot: str) -> SlotState:
        with self._cond:
            return self._get_slot(slot).state

    def is_ready(self, slot: str) -> bool:
        return self.state(slot) is SlotState.READY

    def producer_of(self, slot: str) -> str:
        with self._cond:
            return self._get_slot(slot).producer

    def put(
        self,
        slot: str,
        files: Mapping[str, bytes],
        *,
        meta: Mapping[str, Any] | None = None,
    ) -> ArtifactRef:
        with self._cond:
            s = self._get_slot(slot)
            if s.state is SlotState.READY:
                raise ArtifactAlreadyWritten(f"Artifact {slot!r} was already written")
            if s.state is SlotState.INVALID:
                raise NotProduced(f"Artifact {slot!r} is invalid: {s.reason}")

        final_dir = self.layout.artifact_dir(slot)
        digest = content_hash(files)
        meta_obj = dict(meta or {})
        ref = ArtifactRef(
            slot=slot,
            run_id=self.run_id,
            producer=s.producer,
            location=str(final_dir / PAYLOAD_DIR),
            sha256=digest,
            files=len(files),
            bytes=sum(len(b) for b in files.values()),
        )

        tmp_dir = make_tmp_dir_for(final_dir)
        try:
            write_tree(tmp_dir / PAYLOAD_DIR, files)
            (tmp_dir / PAYLOAD_DIR).mkdir(exist_ok=True)
            atomic_write_json(
                tmp_dir / SIDECAR,
                {
                    "slot": slot,
                    "run_id": self.run_id,
                    "producer": s.producer,
                    "sha256": digest,
                    "files": sorted(files.keys()),
                    "bytes": ref.bytes,
                    "written_at_utc": utc_now_iso(),
                    "meta": meta_obj,
                },
            )
            atomic_dir_commit(tmp_dir=tmp_dir, final_dir=final_dir)
        except BaseException:
            remove_tree(tmp_dir)
            raise

        with self._cond:
            if s.state is not SlotState.DECLARED:
                # abandoned while writing
                raise NotProduced(f"Artifact {slot!r} is invalid: {s.reason}")
            s.ref = ref
            s.meta = meta_obj
            s.state = SlotState.READY
            self._cond.notify_all()

        log.debug("artifact.put", slot=slot, sha256=digest, files=ref.files)
        if self._emit is not None:
            self._emit(
                EventType.ARTIFACT_WRITTEN,
                action=s.producer,
                slot=slot,
                sha256=digest,
                files=ref.files,
                bytes=ref.bytes,
            )
        return ref

    def get(
        self, ref: ArtifactRef | str, *, timeout: float | None = None
    ) -> ArtifactPayload:
        slot = ref.slot if isinstance(ref, ArtifactRef) else ref
        with self._cond:
            s = self._get_slot(slot)
            done = self._cond.wait_for(
                lambda: s.state is not SlotState.DECLARED, timeout=timeout
            )
            if not done:
                raise NotProduced(
                    f"Artifact {slot!r} not produced within {timeout} s"
                )
            if s.state is SlotState.INVALID:
                raise NotProduced(f"Artifact {slot!r} is invalid: {s.reason}")
            if s.collected:
                raise NotProduced(f"Artifact {slot!r} was garbage-collected")
            assert s.ref is not None
            return ArtifactPayload(ref=s.ref, path=Path(s.ref.location), meta=dict(s.meta))

    def load_sidecar(self, slot: str) -> dict[str, Any]:
        return read_json(self.layout.artifact_dir(slot) / SIDECAR)

    def invalidate(self, slot: str, reason: str) -> None:
        with self._cond:
            s = self._get_slot(slot)
            if s.state is SlotState.INVALID:
                return
            s.state = SlotState.INVALID
            s.reason = reason
            self._cond.notify_all()

        log.debug("artifact.invalidated", slot=slot, reason=reason)
        if self._emit is not None:
            self._emit(
                EventType.ARTIFACT_INVALIDATED,
                action=s.producer,
                slot=slot,
                reason=reason,
            )

    def fail_producer(self, producer: str, reason: str) -> list[str]:
        """Invalidate every slot owned by `producer`, written or not."""
        with self._cond:
            owned = [s.slot for s in self._slots.values() if s.producer == producer]
        for slot in owned:
            self.invalidate(slot, reason)
        return owned

    def abandon(self, reason: str) -> None:
        """Fail every slot that is not ready yet; wakes all blocked readers."""
        with self._cond:
            self._abandoned = reason
            pending = [
                s.slot for s in self._slots.values() if s.state is SlotState.DECLARED
            ]
        for slot in pending:
            self.invalidate(slot, f"run abandoned: {reason}")

    def mark_consumed(self, slot: str, consumer: str) -> None:
        with self._cond:
            self._get_slot(slot).consumed_by.add(consumer)

    def collect_garbage(self) -> list[str]:
        """
        Delete payloads whose declared consumers have all run.

        Retained slots (kept for audit) are never collected.
        """
        with self._cond:
            victims = [
                s
                for s in self._slots.values()
                if s.state is SlotState.READY
                and not s.retain
                and not s.collected
                and s.consumers <= s.consumed_by
            ]
            for s in victims:
                s.collected = True

        removed: list[str] = []
        for s in victims:
            remove_tree(self.layout.artifact_dir(s.slot) / PAYLOAD_DIR)
            removed.append(s.slot)
        if removed:
            log.debug("artifact.gc", slots=removed)
        return removed

    def refs(self) -> dict[str, ArtifactRef]:
        """Refs of every committed, never invalidated slot. Collected ones stay listed."""
        with self._cond:
            return {
                k: s.ref
                for k, s in sorted(self._slots.items())
                if s.state is SlotState.READY and s.ref is not None
            }
