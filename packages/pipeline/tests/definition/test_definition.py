from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from user_pipeline.collaborators import (
    DirectorySourceProvider,
    LocalBuildRunner,
    LocalImageRepository,
    LocalTemplateEngine,
)
from user_pipeline.core import DefinitionError
from user_pipeline.definition import (
    BUILD_STAGE,
    DEPLOY_ACTION,
    IMAGE_BUILD_ACTION,
    Collaborators,
    build_config,
    build_pipeline,
    load_definition,
    parse_definition,
)
from user_pipeline.pipeline import validate_definition


def test_load_definition_from_directory(tmp_path: Path, definition_raw: dict[str, Any]) -> None:
    (tmp_path / "pipeline.json").write_text(json.dumps(definition_raw))
    defn = load_definition(tmp_path)

    assert defn.name == "user-pipeline"
    assert defn.deploy.stack_name == "UserEcsStackDeployedInPipeline"
    assert defn.deploy.parameter_overrides == {"ImageTag": "ImageTag"}
    assert defn.build.exported_variables == {"imageTag": "ImageTag"}


def test_missing_definition(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError):
        load_definition(tmp_path)


@pytest.mark.parametrize(
    "patch",
    [
        {"deploy": {"template": "UserEcsStack", "parameter_overrides": {"ImageTag": "Nope"}}},
        {"build": {"phases": {"deploy": ["true"]}}},
        {"build": {"tag_variable": "other"}},
        {"spec_version": 0},
        {"extra": True},
    ],
)
def test_invalid_definitions(definition_raw: dict[str, Any], patch: dict[str, Any]) -> None:
    definition_raw.update(patch)
    with pytest.raises(DefinitionError):
        parse_definition(definition_raw)


def test_build_pipeline_wiring(
    tmp_path: Path, source_root: Path, definition_raw: dict[str, Any]
) -> None:
    defn = parse_definition(definition_raw)
    collab = Collaborators.local(defn, state_root=tmp_path / "state", source_root=source_root)

    assert isinstance(collab.sources, DirectorySourceProvider)
    assert isinstance(collab.builder, LocalBuildRunner)
    assert isinstance(collab.repository, LocalImageRepository)
    assert isinstance(collab.engine, LocalTemplateEngine)

    stages = build_pipeline(defn, collab)
    validate_definition(stages)

    assert [s.stage_id for s in stages] == ["Source", "Build", "Deploy"]
    build = next(s for s in stages if s.stage_id == BUILD_STAGE)
    assert build.exports() == ["ImageTag"]

    deploy = stages[-1].actions[0]
    assert deploy.action_id == DEPLOY_ACTION
    (handle,) = deploy.handles()
    assert handle.name == "ImageTag" and handle.exporter == IMAGE_BUILD_ACTION

    cfg = build_config(defn)
    assert cfg.container_name == "user-repository"
    assert cfg.phases == {"build": ("export imageTag=$RESOLVED_SOURCE_VERSION",)}


def test_directory_sources_need_a_root(tmp_path: Path, definition_raw: dict[str, Any]) -> None:
    defn = parse_definition(definition_raw)
    with pytest.raises(ValueError):
        Collaborators.local(defn, state_root=tmp_path)
