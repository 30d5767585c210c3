from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class RunLayout:
    """
    Path layout of a single pipeline run:

      {root}/{run_id}/artifacts/{slot}/
      {root}/{run_id}/events.jsonl
      {root}/{run_id}/run_report.json
      {root}/{run_id}/params.json
    """

    root: Path
    run_id: str

    @property
    def run_dir(self) -> Path:
        return self.root / self.run_id

    def artifacts_root(self) -> Path:
        return self.run_dir / "artifacts"

    def artifact_dir(self, slot: str) -> Path:
        return self.artifacts_root() / slot

    def events_jsonl(self) -> Path:
        return self.run_dir / "events.jsonl"

    def run_report_json(self) -> Path:
        return self.run_dir / "run_report.json"

    def params_json(self) -> Path:
        return self.run_dir / "params.json"

    def ensure_dirs(self) -> None:
        self.artifacts_root().mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True, slots=True)
class StateLayout:
    """
    Long-lived state shared by runs:

      {root}/environments/{name}.json
      {root}/images/{repository}/index.json
      {root}/checkouts/{run_id}/{slot}/
    """

    root: Path

    def environments_root(self) -> Path:
        return self.root / "environments"

    def environment_json(self, name: str) -> Path:
        return self.environments_root() / f"{name}.json"

    def image_index_json(self, repository: str) -> Path:
        return self.root / "images" / repository / "index.json"

    def checkout(self, run_id: str, name: str) -> Path:
        return self.root / "checkouts" / run_id / name
