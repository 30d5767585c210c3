from __future__ import annotations

from typing import Any

from user_pipeline.core import EventType, TemplateError
from user_pipeline.deploy import DeploymentExecutor
from user_pipeline.pipeline import ActionContext, ActionFn
from user_pipeline.template import load_templates


def deploy_template(executor: DeploymentExecutor) -> ActionFn:
    """
    Action applying one template of its input artifact.

    config:
      template:             stack name inside the template artifact
      environment:          target environment name
      parameter_overrides:  {template parameter: ParameterHandle}
    """

    def _fn(ctx: ActionContext) -> dict[str, Any]:
        (template_slot,) = ctx.spec.inputs
        stack = ctx.config["template"]
        environment = ctx.config.get("environment") or stack

        templates = load_templates(ctx.input(template_slot).files)
        if stack not in templates:
            raise TemplateError(
                f"Template artifact has no stack {stack!r}; found {sorted(templates)}"
            )
        template = templates[stack]

        # blocks until every exporter has published its value
        resolved = ctx.resolve_config(dict(ctx.config.get("parameter_overrides", {})))

        ctx.emit(
            EventType.DEPLOY_START,
            environment=environment,
            template_sha256=template.sha256,
            parameters=resolved,
        )
        ref = executor.deploy(template, resolved, environment=environment)
        ctx.emit(
            EventType.DEPLOY_FINISH if ref.changed else EventType.DEPLOY_NOOP,
            environment=ref.name,
            version=ref.version,
            fingerprint=ref.fingerprint,
        )
        return {"environment": ref.to_dict()}

    return _fn
