"""Pipeline event trail models."""

from dataclasses import dataclass
from enum import Enum


class PipelineEventType(str, Enum):
    """Types of pipeline events."""

    DESIGN_CREATED = "DESIGN_CREATED"
    JOB_SUBMITTED = "JOB_SUBMITTED"
    JOB_DISCARDED = "JOB_DISCARDED"
    VERSION_COMMITTED = "VERSION_COMMITTED"
    STAGE_ADVANCED = "STAGE_ADVANCED"
    CLARIFICATION_REQUESTED = "CLARIFICATION_REQUESTED"
    DESIGN_FAILED = "DESIGN_FAILED"
    ROLLBACK = "ROLLBACK"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"


@dataclass(frozen=True)
class PipelineEvent:
    """Single state change of a design.

    Captures what happened, to which version and through which job, for
    progress reporting and after-the-fact debugging.
    """

    event_id: str
    event_type: PipelineEventType
    design_id: str
    version_id: str | None = None
    job_id: str | None = None
    stage: str | None = None
    code: str | None = None  # Error code for DESIGN_FAILED
    summary: str = ""
    created_at: str = ""  # ISO 8601
