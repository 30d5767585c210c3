from __future__ import annotations

import json
from pathlib import Path

import pytest

from user_pipeline.collaborators import (
    IMAGE_DEFINITIONS,
    BuildConfig,
    LocalBuildRunner,
    LocalImageRepository,
    SourceCoordinate,
    SourceSnapshot,
)
from user_pipeline.core import BuildFailed

SOURCE = SourceSnapshot(
    coordinate=SourceCoordinate(owner="acme", repo="user-app"),
    version="a" * 40,
    files={"build.gradle": b"plugins {}\n"},
)


def _repo(tmp_path: Path) -> LocalImageRepository:
    return LocalImageRepository(state_root=tmp_path / "state", repository="user-repository")


def test_image_repository_index(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    assert repo.repository_uri == "registry.local/user-repository"
    assert not repo.has("abc123")

    uri = repo.push("abc123", "sha256:1")
    assert uri == "registry.local/user-repository:abc123"
    assert repo.has("abc123")
    # a second instance sees the same index
    assert _repo(tmp_path).tags()["abc123"]["digest"] == "sha256:1"


def test_build_exports_tag_and_writes_image_definitions(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    cfg = BuildConfig(
        container_name="user-repository",
        phases={
            "install": ("echo installing",),
            "build": (
                "test -f build.gradle",
                'echo "$REPOSITORY_URI" > uri.txt',
                "export imageTag=$RESOLVED_SOURCE_VERSION",
            ),
            "post_build": ('test "$imageTag" = "$RESOLVED_SOURCE_VERSION"',),
        },
    )
    result = LocalBuildRunner(repo).build(SOURCE, cfg, workdir=tmp_path / "work")

    assert result.tag == "a" * 40
    assert result.exported == {"imageTag": "a" * 40}
    assert [p.phase for p in result.phases] == ["install", "build", "post_build"]
    assert (tmp_path / "work" / "uri.txt").read_text().strip() == repo.repository_uri
    assert repo.has(result.tag)

    defs = json.loads(result.files[IMAGE_DEFINITIONS])
    assert defs == [{"imageUri": result.image_uri, "name": "user-repository"}]


def test_build_tag_defaults_to_source_version(tmp_path: Path) -> None:
    cfg = BuildConfig(container_name="c", phases={"build": ("true",)})
    result = LocalBuildRunner(_repo(tmp_path)).build(SOURCE, cfg, workdir=tmp_path / "w")
    assert result.tag == SOURCE.version


def test_failing_phase_raises_build_failed(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    cfg = BuildConfig(container_name="c", phases={"build": ("echo broken >&2", "exit 3")})
    with pytest.raises(BuildFailed, match="broken"):
        LocalBuildRunner(repo).build(SOURCE, cfg, workdir=tmp_path / "w")
    assert repo.tags() == {}


def test_build_is_retried(tmp_path: Path) -> None:
    counter = tmp_path / "attempts"
    cfg = BuildConfig(
        container_name="c",
        phases={"build": (f'echo x >> "{counter}"', f'test "$(wc -l < "{counter}")" -ge 2')},
        retries=2,
        retry_backoff_s=0.0,
    )
    result = LocalBuildRunner(_repo(tmp_path)).build(SOURCE, cfg, workdir=tmp_path / "w")
    assert result.tag == SOURCE.version
    assert len(counter.read_text().splitlines()) == 2


def test_build_config_rejects_unknown_phase() -> None:
    with pytest.raises(ValueError):
        BuildConfig(container_name="c", phases={"deploy": ("true",)})
