from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .fs import atomic_write_text

# compact form feeds fingerprints; indented form is what lands on disk
_COMPACT = {"separators": (",", ":")}


def stable_json_dumps(obj: Any, *, indent: int | None = 2) -> str:
    """
    Key-sorted, non-ASCII-preserving JSON. NaN and infinities are rejected so
    the same object always hashes the same on every reader.
    """
    layout: dict[str, Any] = _COMPACT if indent is None else {"indent": indent}
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, allow_nan=False, **layout)


def stable_json_bytes(obj: Any, *, indent: int | None = 2) -> bytes:
    return stable_json_dumps(obj, indent=indent).encode("utf-8")


def atomic_write_json(path: Path, obj: Any, *, indent: int = 2) -> None:
    atomic_write_text(Path(path), stable_json_dumps(obj, indent=indent) + "\n")


def read_json(path: Path) -> dict[str, Any]:
    """Read a JSON document whose top level must be an object."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data
