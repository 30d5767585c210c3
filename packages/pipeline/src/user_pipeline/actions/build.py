from __future__ import annotations

from typing import Any, Mapping

from user_pipeline.collaborators import BuildConfig, BuildRunner
from user_pipeline.core import EventType, StateLayout
from user_pipeline.pipeline import ActionContext, ActionFn

from .source import snapshot_from_payload


def build_image(runner: BuildRunner) -> ActionFn:
    """
    Action building the container image of its single input source.

    config:
      build:    BuildConfig
      exports:  {shell variable: deferred parameter}
    """

    def _fn(ctx: ActionContext) -> dict[str, Any]:
        cfg: BuildConfig = ctx.config["build"]
        exports: Mapping[str, str] = ctx.config.get("exports", {})
        (source_slot,) = ctx.spec.inputs
        (output_slot,) = ctx.spec.outputs

        snap = snapshot_from_payload(ctx.input(source_slot))
        workdir = StateLayout(ctx.run.state_root).checkout(ctx.run.run_id, ctx.action_id)

        result = runner.build(snap, cfg, workdir=workdir)
        ctx.write_output(
            output_slot,
            result.files,
            meta={
                "image_uri": result.image_uri,
                "tag": result.tag,
                "digest": result.digest,
                "source_version": result.source_version,
            },
        )
        for var, param in exports.items():
            ctx.export(param, result.exported[var])

        ctx.emit(
            EventType.BUILD_FINISH,
            image_uri=result.image_uri,
            tag=result.tag,
            phases=[p.phase for p in result.phases],
        )
        return {
            "image_uri": result.image_uri,
            "tag": result.tag,
            "_metrics": {
                "phase_ms": {p.phase: p.duration_ms for p in result.phases},
            },
        }

    return _fn
