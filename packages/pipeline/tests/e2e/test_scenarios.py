from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from user_pipeline.collaborators import (
    BuildConfig,
    BuildResult,
    DirectorySourceProvider,
    LocalImageRepository,
    LocalTemplateEngine,
    SourceSnapshot,
    image_health_check,
)
from user_pipeline.core import BuildFailed, read_json
from user_pipeline.definition import (
    BUILD_STAGE,
    DEPLOY_ACTION,
    DEPLOY_STAGE,
    Collaborators,
    build_pipeline,
    parse_definition,
)
from user_pipeline.pipeline import PipelineRunner, RunnerConfig, Status

ENVIRONMENT = "UserEcsStackDeployedInPipeline"


class FakeBuildRunner:
    """Reports a fixed tag without running any shell, pushing it unless `push` is off."""

    def __init__(
        self, repository: LocalImageRepository, tag: str = "abc123", *, push: bool = True
    ) -> None:
        self.repository = repository
        self.tag = tag
        self.push = push
        self.calls = 0

    def build(self, source: SourceSnapshot, cfg: BuildConfig, *, workdir: Path) -> BuildResult:
        self.calls += 1
        digest = f"sha256:{source.version}"
        if self.push:
            uri = self.repository.push(self.tag, digest)
        else:
            uri = self.repository.uri_for_tag(self.tag)
        body = json.dumps([{"name": cfg.container_name, "imageUri": uri}]).encode("utf-8")
        return BuildResult(
            image_uri=uri,
            tag=self.tag,
            digest=digest,
            source_version=source.version,
            exported={cfg.tag_variable: self.tag},
            files={"imagedefinitions.json": body},
        )


class BrokenBuildRunner:
    def build(self, source: SourceSnapshot, cfg: BuildConfig, *, workdir: Path) -> BuildResult:
        raise BuildFailed("gradle: compilation failed")


class Harness:
    def __init__(self, tmp_path: Path, source_root: Path, raw: dict[str, Any], builder=None):
        self.state_root = tmp_path / "state"
        self.run_root = tmp_path / "runs"
        self.defn = parse_definition(raw)
        self.repo = LocalImageRepository(state_root=self.state_root, repository="user-repository")
        self.engine = LocalTemplateEngine(
            state_root=self.state_root, health_check=image_health_check([self.repo])
        )
        self.collab = Collaborators(
            sources=DirectorySourceProvider(source_root),
            builder=builder or FakeBuildRunner(self.repo),
            repository=self.repo,
            engine=self.engine,
        )

    def run(self, run_id: str):
        runner = PipelineRunner(
            stages=build_pipeline(self.defn, self.collab),
            name=self.defn.name,
            cfg=RunnerConfig(max_workers=4, resolve_timeout_s=10.0, artifact_timeout_s=10.0),
        )
        return runner.run(run_root=self.run_root, state_root=self.state_root, run_id=run_id)


def _deploy_result(report):
    (action,) = report.stage(DEPLOY_STAGE).actions
    assert action.action == DEPLOY_ACTION
    return action


def test_source_build_deploy_delivers_the_built_tag(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    h = Harness(tmp_path, source_root, definition_raw)
    code, report = h.run("run-1")

    assert code == 0
    assert report.status is Status.SUCCEEDED
    assert report.parameters == {"ImageTag": "abc123"}

    ref = h.engine.current(ENVIRONMENT)
    assert ref is not None
    assert ref.parameters == {"ImageTag": "abc123"}
    assert ref.outputs["Image"].endswith(":abc123")
    assert ref.version == 1

    # no placeholder survives into the applied body
    body = h.engine.body(ENVIRONMENT)
    assert "Parameters" not in body
    (container,) = body["Resources"]["TaskDefinition"]["Properties"]["Containers"]
    assert container["Image"] == "registry.local/user-repository:abc123"

    params = read_json(h.run_root / "run-1" / "params.json")["parameters"]
    assert params["ImageTag"]["value"] == "abc123"
    assert params["ImageTag"]["readers"] == [DEPLOY_ACTION]


def test_failed_build_never_reaches_deploy(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    h = Harness(tmp_path, source_root, definition_raw, builder=BrokenBuildRunner())
    code, report = h.run("run-1")

    assert code != 0
    assert report.failed_stage == BUILD_STAGE
    assert report.failure is not None and report.failure.exc_type == "BuildFailed"
    assert report.stage(DEPLOY_STAGE).status is Status.PENDING
    assert report.parameters == {}
    assert h.engine.current(ENVIRONMENT) is None
    assert h.engine.history(ENVIRONMENT) == []


def test_rerun_with_same_inputs_is_a_no_op(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    h = Harness(tmp_path, source_root, definition_raw)
    first_code, first = h.run("run-1")
    second_code, second = h.run("run-2")

    assert first_code == 0 and second_code == 0
    assert _deploy_result(first).outputs["environment"]["changed"] is True

    env = _deploy_result(second).outputs["environment"]
    assert env["changed"] is False
    assert env["version"] == 1
    assert len(h.engine.history(ENVIRONMENT)) == 1

    events = [
        json.loads(line)["type"]
        for line in (h.run_root / "run-2" / "events.jsonl").read_text().splitlines()
    ]
    assert "deploy.noop" in events


def test_unbound_placeholder_fails_before_apply(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    definition_raw["deploy"]["parameter_overrides"] = {}
    h = Harness(tmp_path, source_root, definition_raw)
    code, report = h.run("run-1")

    assert code != 0
    assert report.failed_stage == DEPLOY_STAGE
    assert report.failure is not None
    assert report.failure.exc_type == "UnresolvedPlaceholder"
    assert "ImageTag" in report.failure.message
    assert h.engine.current(ENVIRONMENT) is None
    assert h.engine.history(ENVIRONMENT) == []


def test_new_tag_rolls_forward(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    tag = "v2"
    h = Harness(tmp_path, source_root, definition_raw)
    assert h.run("run-1")[0] == 0

    h.collab = Collaborators(
        sources=h.collab.sources,
        builder=FakeBuildRunner(h.repo, tag=tag),
        repository=h.repo,
        engine=h.engine,
    )
    code, report = h.run("run-2")

    assert code == 0
    ref = h.engine.current(ENVIRONMENT)
    assert ref is not None and ref.version == 2
    assert ref.parameters == {"ImageTag": tag}
    assert [e["status"] for e in h.engine.history(ENVIRONMENT)] == ["applied", "applied"]


def test_failed_health_check_rolls_back_and_keeps_current(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    h = Harness(tmp_path, source_root, definition_raw)
    assert h.run("run-1")[0] == 0
    before = h.engine.current(ENVIRONMENT)
    assert before is not None

    # the tag is reported but never lands in the repository
    h.collab = Collaborators(
        sources=h.collab.sources,
        builder=FakeBuildRunner(h.repo, tag="ghost", push=False),
        repository=h.repo,
        engine=h.engine,
    )
    code, report = h.run("run-2")

    assert code != 0
    assert report.status is Status.FAILED
    assert report.failed_stage == DEPLOY_STAGE
    assert report.failure is not None and report.failure.exc_type == "Rollback"
    assert "ghost is not available" in report.failure.message

    after = h.engine.current(ENVIRONMENT)
    assert after is not None
    assert after.version == before.version == 1
    assert after.parameters == {"ImageTag": "abc123"}
    assert after.fingerprint == before.fingerprint
    history = h.engine.history(ENVIRONMENT)
    assert [e["status"] for e in history] == ["applied", "rolled_back"]
    assert history[-1]["parameters"] == {"ImageTag": "ghost"}
