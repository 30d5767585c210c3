from __future__ import annotations

from pathlib import Path

import pytest

from user_pipeline.core import fs


def test_atomic_write_text_and_bytes_roundtrip(tmp_path: Path) -> None:
    text_path = tmp_path / "d1" / "sample.txt"
    fs.atomic_write_text(text_path, "hello\n")
    assert text_path.read_text() == "hello\n"

    fs.atomic_write_text(text_path, "updated")
    assert text_path.read_text() == "updated"

    bytes_path = tmp_path / "d2" / "sample.bin"
    fs.atomic_write_bytes(bytes_path, b"\x00\x01")
    assert bytes_path.read_bytes() == b"\x00\x01"
    assert not list((tmp_path / "d2").glob("*.tmp"))


def test_write_and_read_tree(tmp_path: Path) -> None:
    files = {"a.txt": b"a", "nested/b.txt": b"b", ".git/HEAD": b"ref"}
    fs.write_tree(tmp_path / "t", files)

    assert fs.read_tree(tmp_path / "t") == files
    assert fs.read_tree(tmp_path / "t", skip=frozenset({".git"})) == {
        "a.txt": b"a",
        "nested/b.txt": b"b",
    }
    assert fs.relpath_posix(tmp_path / "t" / "nested" / "b.txt", tmp_path) == "t/nested/b.txt"


@pytest.mark.parametrize("name", ["../escape.txt", "/abs.txt", "a/../../b"])
def test_write_tree_refuses_escaping_names(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValueError):
        fs.write_tree(tmp_path / "t", {name: b"x"})


def test_atomic_dir_commit_is_write_once(tmp_path: Path) -> None:
    final = tmp_path / "out"
    tmp = fs.make_tmp_dir_for(final)
    (tmp / "f").write_text("1")
    fs.atomic_dir_commit(tmp_dir=tmp, final_dir=final)
    assert (final / "f").read_text() == "1"
    assert not tmp.exists()

    tmp2 = fs.make_tmp_dir_for(final)
    with pytest.raises(FileExistsError):
        fs.atomic_dir_commit(tmp_dir=tmp2, final_dir=final)
    assert (final / "f").read_text() == "1"


def test_safe_unlink_and_remove_tree_tolerate_missing(tmp_path: Path) -> None:
    fs.safe_unlink(tmp_path / "missing")
    fs.remove_tree(tmp_path / "missing-dir")
    p = tmp_path / "x" / "y.txt"
    fs.ensure_parent(p)
    assert p.parent.is_dir()
