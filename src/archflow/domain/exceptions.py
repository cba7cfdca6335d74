"""
Domain exceptions for the pipeline core.

Each class maps 1:1 onto the error taxonomy: a stable machine code, a
user-facing message and the exit code the command line reports. Technical
detail travels separately in ``detail`` and is only ever logged.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from archflow.domain.models import Conflict, JobError


class PipelineError(Exception):
    """Base class for every classified failure."""

    code = "fatal"
    exit_code = 7
    retryable = False
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, detail: str = ""):
        """
        Args:
            message: User-facing message (defaults to the class message)
            detail: Technical detail for logs, never shown to end users
        """
        self.user_message = message or self.default_message
        self.detail = detail
        super().__init__(self.user_message)

    def to_job_error(self) -> "JobError":
        from archflow.domain.models import JobError

        return JobError(code=self.code, message=self.user_message, detail=self.detail)


class ValidationError(PipelineError):
    """Malformed input. Rejected without retry."""

    code = "validation"
    exit_code = 2
    default_message = "The input is invalid."


class AmbiguousInputError(ValidationError):
    """The sketch could not be read unambiguously; the user must clarify."""

    code = "ambiguous_input"
    default_message = "The sketch needs clarification before it can be analyzed."


class TransientError(PipelineError):
    """Timeout, rate limit or network failure. Retried with backoff."""

    code = "transient"
    exit_code = 3
    retryable = True
    default_message = "A service was temporarily unavailable."


class JobTimeoutError(TransientError):
    """A job ran past its deadline. Terminal: deadlines are not retried."""

    code = "timeout"
    retryable = False
    default_message = "The operation took too long and was stopped."


class CapabilityUnavailableError(PipelineError):
    """Circuit breaker open for the capability."""

    code = "capability_unavailable"
    exit_code = 4
    default_message = "The service is degraded. Please try again later."


class PolicyError(PipelineError):
    """A business rule forbids the request."""

    code = "policy"
    exit_code = 5
    default_message = "The request is not allowed by policy."


class InvalidTransitionError(PolicyError):
    """The design's current stage does not permit the requested step."""

    code = "invalid_transition"


class ConflictError(PipelineError):
    """Concurrent edits diverged and need an explicit user decision."""

    code = "conflict"
    exit_code = 6
    default_message = "Concurrent edits conflict and need your decision."

    def __init__(
        self,
        message: str | None = None,
        detail: str = "",
        conflict: "Conflict | None" = None,
    ):
        super().__init__(message, detail)
        self.conflict = conflict


class FatalError(PipelineError):
    """Retries exhausted or an unexpected internal inconsistency."""


class NotFoundError(PipelineError):
    """Unknown design, version, job or report."""

    code = "not_found"
    exit_code = 8
    default_message = "The requested item does not exist."


ERRORS_BY_CODE: dict[str, type[PipelineError]] = {
    cls.code: cls
    for cls in (
        FatalError,
        ValidationError,
        AmbiguousInputError,
        TransientError,
        JobTimeoutError,
        CapabilityUnavailableError,
        PolicyError,
        InvalidTransitionError,
        ConflictError,
        NotFoundError,
    )
}


def error_from_job_error(error: "JobError") -> PipelineError:
    """Rebuild the exception class recorded on a failed job."""
    cls = ERRORS_BY_CODE.get(error.code, FatalError)
    return cls(error.message, error.detail)
