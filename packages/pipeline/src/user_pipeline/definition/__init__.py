from .loader import (
    DEFINITION_FILE,
    load_definition,
    parse_definition,
    schema_for_pipeline_definition,
)
from .models import (
    DeployDef,
    ImageBuildDef,
    PipelineDefinition,
    SourceDef,
    SourcesDef,
    SynthDef,
)
from .pipeline import (
    APP_SOURCE,
    BUILD_STAGE,
    DEPLOY_ACTION,
    DEPLOY_STAGE,
    IMAGE_BUILD,
    IMAGE_BUILD_ACTION,
    INFRA_SOURCE,
    SOURCE_STAGE,
    SYNTH_ACTION,
    TEMPLATES,
    Collaborators,
    build_config,
    build_pipeline,
)

__all__ = [
    "APP_SOURCE",
    "BUILD_STAGE",
    "Collaborators",
    "DEFINITION_FILE",
    "DEPLOY_ACTION",
    "DEPLOY_STAGE",
    "DeployDef",
    "IMAGE_BUILD",
    "IMAGE_BUILD_ACTION",
    "INFRA_SOURCE",
    "ImageBuildDef",
    "PipelineDefinition",
    "SOURCE_STAGE",
    "SYNTH_ACTION",
    "SourceDef",
    "SourcesDef",
    "SynthDef",
    "TEMPLATES",
    "build_config",
    "build_pipeline",
    "load_definition",
    "parse_definition",
    "schema_for_pipeline_definition",
]
