from __future__ import annotations

from typing import Any, Mapping

from user_pipeline.core import (
    ILogger,
    ParameterMismatch,
    UnresolvedPlaceholder,
    get_logger,
    sha256_bytes,
    stable_json_bytes,
)
from user_pipeline.template import Template

from .types import EnvironmentRef, ExecutionRequest, TemplateEngine


def _substitute(node: Any, values: Mapping[str, str]) -> Any:
    if isinstance(node, dict):
        if set(node) == {"Ref"} and node["Ref"] in values:
            return values[node["Ref"]]
        out = {k: _substitute(v, values) for k, v in node.items()}
        join = out.get("Fn::Join")
        if set(out) == {"Fn::Join"} and isinstance(join, list) and len(join) == 2:
            sep, parts = join
            if isinstance(sep, str) and isinstance(parts, list) and all(
                isinstance(p, str) for p in parts
            ):
                return sep.join(parts)
        return out
    if isinstance(node, list):
        return [_substitute(v, values) for v in node]
    return node


def check_parameters(template: Template, resolved: Mapping[str, str]) -> None:
    """
    Raise unless `resolved` carries exactly the template's placeholders.
    """
    expected = set(template.placeholders)
    given = set(resolved)

    missing = sorted(expected - given)
    if missing:
        raise UnresolvedPlaceholder(
            f"Template {template.stack_name} has no value for {missing}"
        )
    extra = sorted(given - expected)
    if extra:
        raise ParameterMismatch(
            f"Template {template.stack_name} declares no parameter(s) {extra}"
        )
    empty = sorted(k for k, v in resolved.items() if not isinstance(v, str) or not v)
    if empty:
        raise UnresolvedPlaceholder(
            f"Template {template.stack_name} got empty value(s) for {empty}"
        )


def request_fingerprint(body: Mapping[str, Any], parameters: Mapping[str, str]) -> str:
    return sha256_bytes(
        stable_json_bytes({"body": body, "parameters": dict(parameters)}, indent=None)
    )


def substitute(
    template: Template, resolved: Mapping[str, str], *, environment: str | None = None
) -> ExecutionRequest:
    """
    Build an execution request with every placeholder replaced by its value.
    """
    check_parameters(template, resolved)
    params = {k: resolved[k] for k in sorted(resolved)}
    body = _substitute(template.body, params)
    # parameter declarations are consumed by substitution
    body.pop("Parameters", None)
    return ExecutionRequest(
        environment=environment or template.stack_name,
        template_sha256=template.sha256,
        parameters=params,
        body=body,
        fingerprint=request_fingerprint(body, params),
    )


class DeploymentExecutor:
    """
    Idempotent create-or-update of an environment from a template plus the
    resolved deferred parameters.
    """

    def __init__(self, engine: TemplateEngine, *, logger: ILogger | None = None) -> None:
        self.engine = engine
        self.log = logger or get_logger("user_pipeline.deploy")

    def deploy(
        self,
        template: Template,
        resolved_params: Mapping[str, str],
        *,
        environment: str | None = None,
    ) -> EnvironmentRef:
        request = substitute(template, resolved_params, environment=environment)
        log = self.log.bind(
            environment=request.environment, fingerprint=request.fingerprint[:12]
        )

        current = self.engine.current(request.environment)
        if current is not None and current.fingerprint == request.fingerprint:
            log.info("Environment already at desired state", version=current.version)
            return EnvironmentRef(
                name=current.name,
                fingerprint=current.fingerprint,
                template_sha256=current.template_sha256,
                parameters=dict(current.parameters),
                version=current.version,
                changed=False,
                outputs=dict(current.outputs),
            )

        log.info(
            "Applying template",
            template_sha256=template.sha256[:12],
            parameters=request.parameters,
            previous_version=current.version if current is not None else None,
        )
        ref = self.engine.apply(request)
        log.info("Environment updated", version=ref.version)
        return ref
