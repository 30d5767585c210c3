from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import structlog

from user_pipeline.core import StateLayout, atomic_write_json, read_json, utc_now_iso

log = structlog.get_logger(__name__)

DEFAULT_REGISTRY = "registry.local"


class LocalImageRepository:
    """
    Image repository backed by a JSON index of pushed tags:

      {state_root}/images/{repository}/index.json
    """

    def __init__(
        self, *, state_root: Path, repository: str, registry: str = DEFAULT_REGISTRY
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.index_path = StateLayout(Path(state_root)).image_index_json(repository)
        self._lock = threading.Lock()

    @property
    def repository_uri(self) -> str:
        return f"{self.registry}/{self.repository}"

    def uri_for_tag(self, tag: str) -> str:
        return f"{self.repository_uri}:{tag}"

    def _load(self) -> dict[str, Any]:
        if not self.index_path.exists():
            return {"repository": self.repository, "tags": {}}
        return read_json(self.index_path)

    def tags(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return dict(self._load()["tags"])

    def has(self, tag: str) -> bool:
        return tag in self.tags()

    def push(self, tag: str, digest: str) -> str:
        """
        Record an image under `tag`. Re-pushing a tag moves it to the new digest.
        """
        with self._lock:
            index = self._load()
            prev = index["tags"].get(tag)
            index["tags"][tag] = {"digest": digest, "pushed_at_utc": utc_now_iso()}
            atomic_write_json(self.index_path, index)
        log.info(
            "image.pushed",
            image=self.uri_for_tag(tag),
            digest=digest[:12],
            moved=prev is not None and prev.get("digest") != digest,
        )
        return self.uri_for_tag(tag)
