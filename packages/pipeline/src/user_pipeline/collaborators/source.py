from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from user_pipeline.core import SourceUnavailable, content_hash, read_tree

from .http import (
    DEFAULT_MAX_ARCHIVE_BYTES,
    HttpFetchError,
    RetryPolicy,
    download,
    make_http_client,
)

log = structlog.get_logger(__name__)

# GitHub serves branch archives from codeload
DEFAULT_ARCHIVE_URL = "https://codeload.github.com/{owner}/{repo}/zip/refs/heads/{ref}"

_SKIP_DIRS = frozenset({".git"})


@dataclass(frozen=True, slots=True)
class SourceCoordinate:
    owner: str
    repo: str
    ref: str = "main"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}@{self.ref}"


@dataclass(frozen=True, slots=True)
class SourceSnapshot:
    coordinate: SourceCoordinate
    version: str
    files: dict[str, bytes] = field(default_factory=dict)


def resolve_version(files: dict[str, bytes]) -> str:
    """40-hex version id of a source tree, stable for identical content."""
    return content_hash(files)[:40]


class SourceProvider(Protocol):
    def fetch(self, coordinate: SourceCoordinate) -> SourceSnapshot: ...


class DirectorySourceProvider:
    """
    Serves sources from `{root}/{owner}/{repo}`; a `{ref}` subdirectory, when
    present, holds that branch.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def fetch(self, coordinate: SourceCoordinate) -> SourceSnapshot:
        repo_dir = self.root / coordinate.owner / coordinate.repo
        ref_dir = repo_dir / coordinate.ref
        base = ref_dir if ref_dir.is_dir() else repo_dir
        if not base.is_dir():
            raise SourceUnavailable(f"No source for {coordinate} under {self.root}")

        files = read_tree(base, skip=_SKIP_DIRS)
        if not files:
            raise SourceUnavailable(f"Source {coordinate} is empty")

        snap = SourceSnapshot(
            coordinate=coordinate, version=resolve_version(files), files=files
        )
        log.debug("source.read", source=str(coordinate), files=len(files), version=snap.version)
        return snap


def unpack_archive(raw: bytes) -> dict[str, bytes]:
    """
    Unpack a zip archive, dropping the single top-level directory that
    repository archives wrap their contents in.
    """
    with zipfile.ZipFile(io.BytesIO(raw)) as zf:
        names = [i.filename for i in zf.infolist() if not i.is_dir()]
        tops = {n.split("/", 1)[0] for n in names}
        strip = len(tops) == 1 and all("/" in n for n in names)
        out: dict[str, bytes] = {}
        for name in names:
            rel = name.split("/", 1)[1] if strip else name
            if not rel or rel.split("/", 1)[0] in _SKIP_DIRS:
                continue
            out[rel] = zf.read(name)
    return out


class ArchiveSourceProvider:
    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        url_template: str = DEFAULT_ARCHIVE_URL,
        retry: RetryPolicy = RetryPolicy(),
        max_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
    ) -> None:
        self.client = client or make_http_client()
        self.url_template = url_template
        self.retry = retry
        self.max_bytes = max_bytes

    def url_for(self, coordinate: SourceCoordinate) -> str:
        return self.url_template.format(
            owner=coordinate.owner, repo=coordinate.repo, ref=coordinate.ref
        )

    def fetch(self, coordinate: SourceCoordinate) -> SourceSnapshot:
        url = self.url_for(coordinate)
        try:
            body = download(self.client, url, policy=self.retry, max_bytes=self.max_bytes)
        except HttpFetchError as e:
            raise SourceUnavailable(f"Could not fetch {coordinate}: {e}") from e

        try:
            files = unpack_archive(body)
        except zipfile.BadZipFile as e:
            raise SourceUnavailable(f"Archive for {coordinate} is not a zip file") from e
        if not files:
            raise SourceUnavailable(f"Archive for {coordinate} is empty")

        log.info("source.downloaded", source=str(coordinate), url=url, files=len(files))
        return SourceSnapshot(
            coordinate=coordinate, version=resolve_version(files), files=files
        )
