from __future__ import annotations

import traceback
from dataclasses import dataclass


class PipelineError(RuntimeError):
    """Base error"""


@dataclass(frozen=True, slots=True)
class StageError:
    """
    A normalized error record for action and stage failures.
    """

    exc_type: str
    message: str
    traceback: str


def stage_error_from_exc(exc: BaseException) -> StageError:
    return StageError(
        exc_type=type(exc).__name__,
        message=str(exc),
        traceback="".join(traceback.format_exception(exc)),
    )


class TransientError(PipelineError):
    """
    Retryable failures such as network timeouts, temporary upstream 5xx
    """


class DefinitionError(PipelineError):
    """The pipeline definition violates a wiring invariant"""


# Collaborator failures


class SourceUnavailable(PipelineError):
    """The source collaborator could not supply the requested repository/ref"""


class BuildFailed(PipelineError):
    """The build runner could not produce an image"""


# Artifact store


class ArtifactError(PipelineError):
    """Artifact store error"""


class NotProduced(ArtifactError):
    """
    The artifact will never become ready: its producer failed, the slot was
    invalidated, or the run was abandoned.
    """


class ArtifactAlreadyWritten(ArtifactError):
    """A slot payload is write-once"""


# Deferred parameters


class ParameterError(PipelineError):
    """Deferred parameter registry error"""


class DuplicateDeclaration(ParameterError):
    """A deferred parameter name was declared twice"""


class UndeclaredParameter(ParameterError):
    """A deferred parameter name was never declared"""


class DuplicateExport(ParameterError):
    """A deferred parameter was exported twice in one run"""


class NeverExported(ParameterError):
    """The deferred parameter will never receive a value in this run"""


# Action contract


class ActionContractError(PipelineError):
    """An action broke its declared inputs/outputs/exports contract"""


class InputNotReady(ActionContractError):
    pass


class MissingOutput(ActionContractError):
    pass


class UndeclaredOutput(ActionContractError):
    pass


class MissingExport(ActionContractError):
    pass


class UndeclaredExport(ActionContractError):
    pass


# Templates and deployment


class TemplateError(PipelineError):
    """Template synthesis or substitution error"""


class TemplateValidationError(TemplateError):
    """Template did not validate against the shipped JSON schema"""


class UnresolvedPlaceholder(TemplateError):
    """The template declares a placeholder with no resolved value"""


class ParameterMismatch(TemplateError):
    """A resolved value was supplied for a name the template does not declare"""


class DeploymentError(PipelineError):
    """Template-execution failure"""


class ResourceConflict(DeploymentError):
    """A named resource already belongs to another environment"""


class QuotaExceeded(DeploymentError):
    """The environment would exceed its resource quota"""


class Rollback(DeploymentError):
    """
    The update failed after apply and was rolled back; the environment is
    still at its prior stable state.
    """

    def __init__(self, *, environment: str, reason: str) -> None:
        super().__init__(f"Deployment of {environment} rolled back: {reason}")
        self.environment = environment
        self.reason = reason
