from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

from user_pipeline.template.models import ParameterName, ResourceName, StackName

Name = Annotated[
    str,
    StringConstraints(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9][A-Za-z0-9_\-\.]*$"),
]
ShellVariable = Annotated[
    str,
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$"),
]
Phase = Literal["install", "build", "post_build"]


class SourceDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    owner: Name
    repo: Name
    ref: Name = "main"


class SourcesDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["directory", "archive"] = "directory"
    # directory root for "directory", url template for "archive"
    location: Optional[str] = None
    app: SourceDef
    infra: SourceDef


class ImageBuildDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    repository: ResourceName = "user-repository"
    container_name: Optional[ResourceName] = None
    runtime: Optional[str] = None
    phases: dict[Phase, list[str]] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)

    # shell variable -> deferred parameter it is published as
    exported_variables: dict[ShellVariable, ParameterName] = Field(
        default_factory=lambda: {"imageTag": "ImageTag"}
    )
    tag_variable: ShellVariable = "imageTag"

    retries: int = Field(default=0, ge=0, le=5)
    timeout_s: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _validate(self) -> "ImageBuildDef":
        if self.tag_variable not in self.exported_variables:
            raise ValueError(
                f"tag_variable {self.tag_variable!r} must be one of the exported variables"
            )
        params = list(self.exported_variables.values())
        if len(params) != len(set(params)):
            raise ValueError("Two exported variables map to the same parameter")
        return self


class SynthDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    environment_file: str = "environment.json"
    datastore_file: Optional[str] = "datastore.json"


class DeployDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # environment name the template is applied to
    stack_name: StackName = "UserEcsStackDeployedInPipeline"
    # stack in the template artifact
    template: StackName
    # template parameter -> deferred parameter
    parameter_overrides: dict[ParameterName, ParameterName] = Field(
        default_factory=lambda: {"ImageTag": "ImageTag"}
    )


class PipelineDefinition(BaseModel):
    """
    pipeline.json: where the sources live, how the image is built, and which
    template is deployed with which deferred parameters.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(..., ge=1)
    name: Name
    sources: SourcesDef
    build: ImageBuildDef = Field(default_factory=ImageBuildDef)
    synth: SynthDef = Field(default_factory=SynthDef)
    deploy: DeployDef

    @model_validator(mode="after")
    def _validate(self) -> "PipelineDefinition":
        exported = set(self.build.exported_variables.values())
        unknown = sorted(set(self.deploy.parameter_overrides.values()) - exported)
        if unknown:
            raise ValueError(
                f"Deploy overrides use parameter(s) {unknown} that the build does not export"
            )
        return self
