from __future__ import annotations

from pathlib import Path

import pytest

from user_pipeline.cli import main
from user_pipeline.collaborators import LocalTemplateEngine
from user_pipeline.core import load_settings, read_json


@pytest.fixture(autouse=True)
def _settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("USER_PIPELINE_STATE_ROOT", str(tmp_path / "state"))
    monkeypatch.setenv("USER_PIPELINE_RUN_ROOT", str(tmp_path / "runs"))
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


def test_synth_then_deploy_then_show(tmp_path: Path, infra_files: dict[str, bytes]) -> None:
    infra = tmp_path / "infra"
    infra.mkdir()
    for name, data in infra_files.items():
        (infra / name).write_bytes(data)
    out = tmp_path / "templates"

    assert main(["synth", str(infra), "--out", str(out), "--repository-uri", "r.local/app"]) == 0
    manifest = read_json(out / "manifest.json")
    assert sorted(manifest["stacks"]) == ["UserDynamoDbStack", "UserEcsStack"]

    template = out / "UserEcsStack.template.json"
    args = ["deploy", str(template), "--environment", "prod", "--param", "ImageTag=v1"]
    assert main(args) == 0
    # same request again is a no-op
    assert main(args) == 0

    ref = LocalTemplateEngine(state_root=tmp_path / "state").current("prod")
    assert ref is not None and ref.version == 1
    assert ref.outputs["Image"] == "r.local/app:v1"

    assert main(["show", "prod"]) == 0
    assert main(["show", "staging"]) == 1


def test_deploy_without_parameters_fails(tmp_path: Path, infra_files: dict[str, bytes]) -> None:
    infra = tmp_path / "infra"
    infra.mkdir()
    for name, data in infra_files.items():
        (infra / name).write_bytes(data)
    out = tmp_path / "templates"
    main(["synth", str(infra), "--out", str(out), "--repository-uri", "r.local/app"])

    assert main(["deploy", str(out / "UserEcsStack.template.json")]) == 1
    assert LocalTemplateEngine(state_root=tmp_path / "state").current("UserEcsStack") is None


def test_param_needs_name_and_value(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["deploy", str(tmp_path / "x.template.json"), "--param", "ImageTag"])
