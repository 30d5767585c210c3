from __future__ import annotations

from typing import Any

from user_pipeline.core import EventType
from user_pipeline.pipeline import ActionContext, ActionFn
from user_pipeline.template import TemplateSynthesizer


def synthesize_templates(synthesizer: TemplateSynthesizer) -> ActionFn:
    """Action turning its infra source input into the template artifact."""

    def _fn(ctx: ActionContext) -> dict[str, Any]:
        (source_slot,) = ctx.spec.inputs
        (output_slot,) = ctx.spec.outputs

        payload = ctx.input(source_slot)
        result = synthesizer.synthesize(payload.files)
        manifest = result.manifest()

        ref = ctx.write_output(
            output_slot,
            result.files(),
            meta={"source_version": payload.meta.get("version"), "stacks": sorted(result.templates)},
        )
        ctx.emit(EventType.SYNTH_FINISH, stacks=manifest["stacks"], sha256=ref.sha256)

        warnings = [
            f"{name} declares no deferred parameters"
            for name, t in sorted(result.templates.items())
            if not t.placeholders
        ]
        return {
            "stacks": {name: t.sha256 for name, t in sorted(result.templates.items())},
            "_warnings": warnings,
        }

    return _fn
