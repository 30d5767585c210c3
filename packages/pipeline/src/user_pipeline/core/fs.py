from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Mapping


def ensure_parent(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def safe_unlink(path: os.PathLike[str] | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        return


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def relpath_posix(path: Path, base_dir: Path) -> str:
    return path.relative_to(base_dir).as_posix()


def _sync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


@contextmanager
def _replacing(path: Path, *, mode: int) -> Iterator[BinaryIO]:
    """
    Yield a binary handle to a sibling temp file that replaces `path` on a
    clean exit and is discarded otherwise.

    Readers see either the previous file or the complete new one.
    """
    ensure_parent(path)
    fd, name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    staged = Path(name)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(staged, mode)
        os.replace(staged, path)
    finally:
        safe_unlink(staged)
    _sync_dir(path.parent)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o644) -> None:
    with _replacing(Path(path), mode=mode) as fh:
        fh.write(data)


def atomic_write_text(
    path: Path, text: str, *, encoding: str = "utf-8", mode: int = 0o644
) -> None:
    atomic_write_bytes(path, text.encode(encoding), mode=mode)


def make_tmp_dir_for(final_dir: Path) -> Path:
    """Staging directory on the same filesystem as `final_dir`."""
    final_dir = Path(final_dir)
    final_dir.parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f".{final_dir.name}.tmp.", dir=final_dir.parent))


def atomic_dir_commit(*, tmp_dir: Path, final_dir: Path) -> None:
    """
    Rename a fully staged directory into place. Artifact payloads are
    write-once, so an existing `final_dir` is an error.
    """
    final_dir = Path(final_dir)
    if final_dir.exists():
        raise FileExistsError(f"Target exists: {final_dir}")
    try:
        Path(tmp_dir).rename(final_dir)
    except OSError:
        remove_tree(Path(tmp_dir))
        raise
    _sync_dir(final_dir.parent)


def write_tree(root: Path, files: Mapping[str, bytes]) -> None:
    """Write a {relative posix name: bytes} mapping below `root`."""
    root = Path(root)
    for name, data in files.items():
        rel = Path(name)
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Refusing to write outside of {root}: {name}")
        target = root / rel
        ensure_parent(target)
        target.write_bytes(data)


def read_tree(root: Path, *, skip: frozenset[str] = frozenset()) -> dict[str, bytes]:
    """
    Every regular file below `root` keyed by relative posix name. Top-level
    entries named in `skip` (e.g. ".git") are left out.
    """
    root = Path(root)
    out: dict[str, bytes] = {}
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        rel = relpath_posix(p, root)
        if rel.split("/", 1)[0] not in skip:
            out[rel] = p.read_bytes()
    return out
