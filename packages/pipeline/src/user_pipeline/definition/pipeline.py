from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from user_pipeline.actions import (
    build_image,
    deploy_template,
    fetch_source,
    synthesize_templates,
)
from user_pipeline.collaborators import (
    ArchiveSourceProvider,
    BuildConfig,
    BuildRunner,
    DirectorySourceProvider,
    LocalBuildRunner,
    LocalImageRepository,
    LocalTemplateEngine,
    SourceCoordinate,
    SourceProvider,
    image_health_check,
)
from user_pipeline.deploy import DeploymentExecutor, TemplateEngine
from user_pipeline.pipeline import ActionSpec, StageSpec
from user_pipeline.template import SynthConfig, TemplateSynthesizer

from .models import PipelineDefinition, SourceDef

# artifact slots
APP_SOURCE = "app-source"
INFRA_SOURCE = "infra-source"
IMAGE_BUILD = "image-build"
TEMPLATES = "templates"

# stages
SOURCE_STAGE = "Source"
BUILD_STAGE = "Build"
DEPLOY_STAGE = "Deploy"

# actions
APP_SOURCE_ACTION = "app-source"
INFRA_SOURCE_ACTION = "infra-source"
IMAGE_BUILD_ACTION = "image-build"
SYNTH_ACTION = "template-synth"
DEPLOY_ACTION = "deploy"


@dataclass(frozen=True, slots=True)
class Collaborators:
    sources: SourceProvider
    builder: BuildRunner
    repository: LocalImageRepository
    engine: TemplateEngine

    @classmethod
    def local(
        cls,
        defn: PipelineDefinition,
        *,
        state_root: Path,
        source_root: Path | None = None,
    ) -> "Collaborators":
        """
        File-backed collaborators rooted at `state_root`.

        Directory sources are read from `source_root`, falling back to
        `sources.location` of the definition.
        """
        repo = LocalImageRepository(state_root=state_root, repository=defn.build.repository)
        if defn.sources.kind == "archive":
            sources: SourceProvider = (
                ArchiveSourceProvider(url_template=defn.sources.location)
                if defn.sources.location
                else ArchiveSourceProvider()
            )
        else:
            root = source_root or (
                Path(defn.sources.location) if defn.sources.location else None
            )
            if root is None:
                raise ValueError("Directory sources need a source root")
            sources = DirectorySourceProvider(root)
        return cls(
            sources=sources,
            builder=LocalBuildRunner(repo),
            repository=repo,
            engine=LocalTemplateEngine(
                state_root=state_root, health_check=image_health_check([repo])
            ),
        )


def _coordinate(src: SourceDef) -> SourceCoordinate:
    return SourceCoordinate(owner=src.owner, repo=src.repo, ref=src.ref)


def build_config(defn: PipelineDefinition) -> BuildConfig:
    b = defn.build
    return BuildConfig(
        container_name=b.container_name or b.repository,
        runtime=b.runtime,
        phases={k: tuple(v) for k, v in b.phases.items()},
        env=dict(b.env),
        exported_variables=tuple(b.exported_variables),
        tag_variable=b.tag_variable,
        retries=b.retries,
        timeout_s=b.timeout_s,
    )


def build_pipeline(defn: PipelineDefinition, collab: Collaborators) -> list[StageSpec]:
    """
    Source -> Build -> Deploy.

    The image build and the template synthesis run side by side in Build;
    the deploy action only meets the image tag through its deferred parameter.
    """
    app = ActionSpec(
        action_id=APP_SOURCE_ACTION,
        fn=fetch_source(collab.sources),
        outputs=(APP_SOURCE,),
        config={"source": _coordinate(defn.sources.app)},
    )
    infra = ActionSpec(
        action_id=INFRA_SOURCE_ACTION,
        fn=fetch_source(collab.sources),
        outputs=(INFRA_SOURCE,),
        config={"source": _coordinate(defn.sources.infra)},
    )

    image = ActionSpec(
        action_id=IMAGE_BUILD_ACTION,
        fn=build_image(collab.builder),
        inputs=(APP_SOURCE,),
        outputs=(IMAGE_BUILD,),
        exports=tuple(defn.build.exported_variables.values()),
        config={
            "build": build_config(defn),
            "exports": dict(defn.build.exported_variables),
        },
    )
    synth = ActionSpec(
        action_id=SYNTH_ACTION,
        fn=synthesize_templates(
            TemplateSynthesizer(
                SynthConfig(
                    environment_file=defn.synth.environment_file,
                    datastore_file=defn.synth.datastore_file,
                    repository_uri=collab.repository.repository_uri,
                )
            )
        ),
        inputs=(INFRA_SOURCE,),
        outputs=(TEMPLATES,),
        retain_outputs=True,
    )

    deploy = ActionSpec(
        action_id=DEPLOY_ACTION,
        fn=deploy_template(DeploymentExecutor(collab.engine)),
        inputs=(TEMPLATES,),
        config={
            "template": defn.deploy.template,
            "environment": defn.deploy.stack_name,
            "parameter_overrides": {
                tparam: image.handle(param)
                for tparam, param in defn.deploy.parameter_overrides.items()
            },
        },
    )

    return [
        StageSpec(stage_id=SOURCE_STAGE, actions=(app, infra)),
        StageSpec(stage_id=BUILD_STAGE, actions=(image, synth)),
        StageSpec(stage_id=DEPLOY_STAGE, actions=(deploy,)),
    ]
