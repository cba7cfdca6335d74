"""
Domain models for the sketch-to-export pipeline.

Pure data structures. Everything except the Design aggregate is immutable
(frozen dataclasses) so snapshots can be shared freely between the scheduler,
the pipeline and callers.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

EMPTY_MAPPING: Mapping[str, Any] = MappingProxyType({})


# =============================================================================
# PIPELINE STAGES
# =============================================================================


class Stage(str, Enum):
    """Stage a design version was created at."""

    UPLOADED = "uploaded"
    ANALYZED = "analyzed"
    VISUALIZED = "visualized"
    REFINING = "refining"
    COMPLIANCE_CHECKED = "compliance_checked"
    EXPORTED = "exported"
    FAILED = "failed"  # Derived only, never recorded on a version


# =============================================================================
# VERSIONS (append-only DAG)
# =============================================================================


@dataclass(frozen=True)
class DesignVersion:
    """
    Immutable node in the version DAG.

    Normally versions form a chain through parent_id; siblings appear when two
    edits are committed against the same parent, and a conflict resolution
    joins two branches through merge_parent_id.
    """

    version_id: str
    design_id: str
    parent_id: str | None
    stage: Stage
    content_hash: str  # sha256 of the canonical JSON payload
    payload: Mapping[str, Any]
    authored_by: str  # "user:<id>" or "job:<kind>:<id>"
    created_at: str  # ISO timestamp
    sequence: int = 0  # Append order assigned by the store
    merge_parent_id: str | None = None
    note: str = ""

    @property
    def elements(self) -> tuple[Mapping[str, Any], ...]:
        return tuple(self.payload.get("elements", ()))

    def element_map(self) -> dict[str, Mapping[str, Any]]:
        return {str(e["id"]): e for e in self.elements}


@dataclass(frozen=True)
class ElementChange:
    """One modified element in a delta."""

    element_id: str
    changed_fields: tuple[str, ...]


@dataclass(frozen=True)
class VersionDelta:
    """Element-level delta between two versions (a -> b)."""

    from_version_id: str
    to_version_id: str
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    modified: tuple[ElementChange, ...] = ()
    payload_changed: bool = False  # Non-element keys differ

    @property
    def touched(self) -> frozenset[str]:
        """Every element id added, removed or modified."""
        return frozenset(self.added) | frozenset(self.removed) | frozenset(
            c.element_id for c in self.modified
        )

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified or self.payload_changed)


@dataclass(frozen=True)
class Conflict:
    """Two sibling versions whose edits overlap on at least one element."""

    parent_id: str
    version_a: str
    version_b: str
    overlapping_element_ids: tuple[str, ...]


class ResolutionStrategy(str, Enum):
    KEEP_A = "keep_a"
    KEEP_B = "keep_b"
    MERGE = "merge"


# =============================================================================
# DESIGN (mutable aggregate)
# =============================================================================


@dataclass(frozen=True)
class FailureRecord:
    """Why a design is in the failed side state."""

    code: str
    user_message: str
    job_id: str | None
    at: str


@dataclass
class Design:
    """
    The root entity a user works on.

    Mutable: owned by the pipeline service, which updates it under its lock.
    The stage is never stored here; it is derived from the head version.
    """

    design_id: str
    owner: str
    head_version_id: str
    created_at: str
    updated_at: str
    version_ids: list[str] = field(default_factory=list)
    failure: FailureRecord | None = None
    clarification: str | None = None
    in_flight_job_ids: list[str] = field(default_factory=list)


# =============================================================================
# JOBS
# =============================================================================


class JobKind(str, Enum):
    ANALYZE = "analyze"
    RENDER = "render"
    SIMULATE_LIGHTING = "simulate-lighting"
    CHECK_COMPLIANCE = "check-compliance"
    EXPORT = "export"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class JobError:
    """Serializable failure record attached to a job."""

    code: str
    message: str  # User-facing
    detail: str = ""  # Technical, for logs only


@dataclass(frozen=True)
class JobRequest:
    """What the pipeline asks the scheduler to run."""

    kind: JobKind
    input_ref: str  # DesignVersion id
    params: Mapping[str, Any] = field(default_factory=lambda: EMPTY_MAPPING)
    design_id: str | None = None


@dataclass(frozen=True)
class Job:
    """Snapshot of a job. Only the scheduler produces new snapshots."""

    job_id: str
    kind: JobKind
    input_ref: str
    status: JobStatus
    submitted_at: str
    deadline_seconds: float
    params: Mapping[str, Any] = field(default_factory=lambda: EMPTY_MAPPING)
    design_id: str | None = None
    attempts: int = 0
    last_error: JobError | None = None
    result: Mapping[str, Any] | None = None
    started_at: str | None = None
    completed_at: str | None = None
    estimated_completion: float | None = None  # Seconds from submission


@dataclass(frozen=True)
class CompletionEvent:
    """Emitted exactly once per terminal job."""

    job_id: str
    kind: JobKind
    status: JobStatus
    input_ref: str
    design_id: str | None = None
    result: Mapping[str, Any] | None = None
    error: JobError | None = None


# =============================================================================
# COMPLIANCE
# =============================================================================


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "critical": 2}[self.value]


@dataclass(frozen=True)
class Violation:
    rule_code: str
    severity: Severity
    description: str
    element_id: str | None
    recommendation: str = ""
    auto_fixable: bool = False
    rule_set: str = ""


@dataclass(frozen=True)
class RuleSetOutcome:
    """Result of one rule-set check."""

    rule_set: str
    violations: tuple[Violation, ...]
    score: float


@dataclass(frozen=True)
class ComplianceReport:
    report_id: str
    version_id: str
    violations: tuple[Violation, ...]
    overall_compliant: bool
    score: float
    rule_sets_evaluated: tuple[str, ...]
    rule_sets_missing: tuple[str, ...]
    created_at: str

    @property
    def partial(self) -> bool:
        return bool(self.rule_sets_missing)

    @property
    def critical_count(self) -> int:
        return sum(1 for v in self.violations if v.severity is Severity.CRITICAL)
