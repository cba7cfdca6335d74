"""
Domain layer for the pipeline core.

Contains models, rules and ports with no external dependencies.
"""

from archflow.domain.exceptions import (
    AmbiguousInputError,
    CapabilityUnavailableError,
    ConflictError,
    FatalError,
    InvalidTransitionError,
    JobTimeoutError,
    NotFoundError,
    PipelineError,
    PolicyError,
    TransientError,
    ValidationError,
)
from archflow.domain.interfaces import (
    CapabilityInterface,
    PipelineEventStoreInterface,
    ReportStoreInterface,
    VersionStoreInterface,
)
from archflow.domain.models import (
    CompletionEvent,
    ComplianceReport,
    Conflict,
    Design,
    DesignVersion,
    ElementChange,
    FailureRecord,
    Job,
    JobError,
    JobKind,
    JobRequest,
    JobStatus,
    ResolutionStrategy,
    RuleSetOutcome,
    Severity,
    Stage,
    VersionDelta,
    Violation,
)

__all__ = [
    # Models
    "Stage",
    "Design",
    "DesignVersion",
    "ElementChange",
    "VersionDelta",
    "Conflict",
    "ResolutionStrategy",
    "FailureRecord",
    "Job",
    "JobError",
    "JobKind",
    "JobRequest",
    "JobStatus",
    "CompletionEvent",
    "Severity",
    "Violation",
    "RuleSetOutcome",
    "ComplianceReport",
    # Interfaces
    "VersionStoreInterface",
    "ReportStoreInterface",
    "CapabilityInterface",
    "PipelineEventStoreInterface",
    # Exceptions
    "PipelineError",
    "ValidationError",
    "AmbiguousInputError",
    "TransientError",
    "JobTimeoutError",
    "CapabilityUnavailableError",
    "PolicyError",
    "InvalidTransitionError",
    "ConflictError",
    "FatalError",
    "NotFoundError",
]
