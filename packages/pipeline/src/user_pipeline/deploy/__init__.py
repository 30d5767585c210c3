from .executor import DeploymentExecutor, check_parameters, request_fingerprint, substitute
from .types import EnvironmentRef, ExecutionRequest, TemplateEngine

__all__ = [
    "DeploymentExecutor",
    "EnvironmentRef",
    "ExecutionRequest",
    "TemplateEngine",
    "check_parameters",
    "request_fingerprint",
    "substitute",
]
