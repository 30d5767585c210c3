from __future__ import annotations

from pathlib import Path

import pytest

from user_pipeline.collaborators import (
    LocalImageRepository,
    LocalTemplateEngine,
    image_health_check,
    physical_names,
)
from user_pipeline.core import QuotaExceeded, ResourceConflict, Rollback
from user_pipeline.deploy import DeploymentExecutor
from user_pipeline.template import SynthConfig, Template, TemplateSynthesizer

URI = "registry.local/user-repository"


@pytest.fixture
def templates(infra_files: dict[str, bytes]) -> dict[str, Template]:
    return TemplateSynthesizer(SynthConfig(repository_uri=URI)).synthesize(infra_files).templates


@pytest.fixture
def repo(tmp_path: Path) -> LocalImageRepository:
    r = LocalImageRepository(state_root=tmp_path / "state", repository="user-repository")
    r.push("abc123", "sha256:1")
    return r


def _engine(tmp_path: Path, repo: LocalImageRepository, **kw) -> LocalTemplateEngine:
    return LocalTemplateEngine(
        state_root=tmp_path / "state", health_check=image_health_check([repo]), **kw
    )


def test_apply_persists_state_and_outputs(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo)
    ref = DeploymentExecutor(engine).deploy(
        templates["UserEcsStack"], {"ImageTag": "abc123"}, environment="prod"
    )

    assert ref.version == 1 and ref.changed
    assert ref.outputs["Image"] == f"{URI}:abc123"
    assert ref.outputs["VpcId"] == "local:Network::Vpc:prod/Vpc"

    # a fresh engine reads the same state back
    again = _engine(tmp_path, repo).current("prod")
    assert again is not None
    assert again.fingerprint == ref.fingerprint and again.parameters == {"ImageTag": "abc123"}
    assert (tmp_path / "state" / "environments" / "prod.json").is_file()


def test_failed_health_check_rolls_back_to_prior_state(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo)
    ex = DeploymentExecutor(engine)
    good = ex.deploy(templates["UserEcsStack"], {"ImageTag": "abc123"}, environment="prod")

    with pytest.raises(Rollback) as info:
        ex.deploy(templates["UserEcsStack"], {"ImageTag": "missing"}, environment="prod")
    assert "missing" in info.value.reason

    current = engine.current("prod")
    assert current is not None
    assert current.fingerprint == good.fingerprint and current.version == 1
    assert [h["status"] for h in engine.history("prod")] == ["applied", "rolled_back"]


def test_rollback_of_first_deploy_leaves_no_environment(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo)
    with pytest.raises(Rollback):
        DeploymentExecutor(engine).deploy(templates["UserEcsStack"], {"ImageTag": "nope"})
    assert engine.current("UserEcsStack") is None


def test_named_resources_cannot_be_shared(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo)
    ex = DeploymentExecutor(engine)
    ex.deploy(templates["UserEcsStack"], {"ImageTag": "abc123"}, environment="prod")

    with pytest.raises(ResourceConflict, match="user-cluster"):
        ex.deploy(templates["UserEcsStack"], {"ImageTag": "abc123"}, environment="staging")
    assert engine.current("staging") is None

    names = physical_names(templates["UserDynamoDbStack"].body)
    assert names == {"Database::Table/User": "Table"}


def test_quota_is_checked_before_apply(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo, quota=3)
    with pytest.raises(QuotaExceeded):
        DeploymentExecutor(engine).deploy(templates["UserEcsStack"], {"ImageTag": "abc123"})
    assert engine.current("UserEcsStack") is None
    assert engine.history("UserEcsStack") == []


def test_datastore_template_deploys_without_parameters(
    tmp_path: Path, repo: LocalImageRepository, templates: dict[str, Template]
) -> None:
    engine = _engine(tmp_path, repo)
    ref = DeploymentExecutor(engine).deploy(templates["UserDynamoDbStack"], {})
    assert ref.outputs == {"TableName": "local:Database::Table:UserDynamoDbStack/Table"}
