from __future__ import annotations

from typing import Optional

import pytest

from user_pipeline.core import ParameterMismatch, UnresolvedPlaceholder
from user_pipeline.deploy import (
    DeploymentExecutor,
    EnvironmentRef,
    ExecutionRequest,
    substitute,
)
from user_pipeline.template import SynthConfig, Template, TemplateSynthesizer

URI = "registry.local/user-repository"


class RecordingEngine:
    def __init__(self) -> None:
        self.applied: list[ExecutionRequest] = []
        self.state: dict[str, EnvironmentRef] = {}
        self.current_calls = 0

    def current(self, name: str) -> Optional[EnvironmentRef]:
        self.current_calls += 1
        return self.state.get(name)

    def apply(self, request: ExecutionRequest) -> EnvironmentRef:
        self.applied.append(request)
        prev = self.state.get(request.environment)
        ref = EnvironmentRef(
            name=request.environment,
            fingerprint=request.fingerprint,
            template_sha256=request.template_sha256,
            parameters=dict(request.parameters),
            version=(prev.version if prev else 0) + 1,
            outputs={"Image": request.body["Outputs"]["Image"]["Value"]},
        )
        self.state[request.environment] = ref
        return ref


@pytest.fixture
def template(infra_files: dict[str, bytes]) -> Template:
    result = TemplateSynthesizer(SynthConfig(repository_uri=URI)).synthesize(infra_files)
    return result.templates["UserEcsStack"]


def test_substitute_builds_a_new_request(template: Template) -> None:
    before = template.source
    req = substitute(template, {"ImageTag": "abc123"}, environment="prod")

    assert template.source == before
    assert req.environment == "prod"
    assert req.template_sha256 == template.sha256
    assert "Parameters" not in req.body
    image = req.body["Resources"]["TaskDefinition"]["Properties"]["Containers"][0]["Image"]
    assert image == f"{URI}:abc123"
    # resource refs are left for the engine
    assert req.body["Resources"]["Service"]["Properties"]["Cluster"] == {"Ref": "Cluster"}


def test_fingerprint_depends_on_values_only(template: Template) -> None:
    a = substitute(template, {"ImageTag": "abc123"})
    b = substitute(template, {"ImageTag": "abc123"})
    c = substitute(template, {"ImageTag": "def456"})
    assert a.fingerprint == b.fingerprint
    assert a.fingerprint != c.fingerprint
    assert a.environment == "UserEcsStack"


def test_missing_placeholder_fails_before_any_engine_call(template: Template) -> None:
    engine = RecordingEngine()
    with pytest.raises(UnresolvedPlaceholder):
        DeploymentExecutor(engine).deploy(template, {})
    assert engine.current_calls == 0 and engine.applied == []


def test_empty_value_counts_as_unresolved(template: Template) -> None:
    engine = RecordingEngine()
    with pytest.raises(UnresolvedPlaceholder):
        DeploymentExecutor(engine).deploy(template, {"ImageTag": ""})
    assert engine.applied == []


def test_extra_parameter_is_a_mismatch(template: Template) -> None:
    engine = RecordingEngine()
    with pytest.raises(ParameterMismatch):
        DeploymentExecutor(engine).deploy(template, {"ImageTag": "a", "Other": "b"})
    assert engine.current_calls == 0


def test_redeploy_with_same_parameters_is_a_noop(template: Template) -> None:
    engine = RecordingEngine()
    ex = DeploymentExecutor(engine)

    first = ex.deploy(template, {"ImageTag": "abc123"}, environment="prod")
    again = ex.deploy(template, {"ImageTag": "abc123"}, environment="prod")

    assert first.changed and first.version == 1
    assert not again.changed
    assert again.version == 1 and again.fingerprint == first.fingerprint
    assert len(engine.applied) == 1

    newer = ex.deploy(template, {"ImageTag": "def456"}, environment="prod")
    assert newer.changed and newer.version == 2
    assert newer.outputs["Image"] == f"{URI}:def456"
