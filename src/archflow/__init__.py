"""
archflow: orchestration core for a sketch-to-export design pipeline.

Sequences, retries, versions and aggregates the work of external AI
capabilities (sketch analysis, rendering, compliance reasoning, CAD/BIM
encoding) without doing any of that work itself.

Example:
    from archflow import DesignPipeline, JobScheduler, JobKind
    from archflow.infrastructure import (
        InMemoryPipelineEventStore,
        InMemoryReportStore,
        InMemoryVersionStore,
        MockCapability,
    )

    scheduler = JobScheduler({JobKind.ANALYZE: MockCapability([{"elements": []}])})
    pipeline = DesignPipeline(
        scheduler,
        InMemoryVersionStore(),
        InMemoryReportStore(),
        InMemoryPipelineEventStore(),
    )
    with scheduler:
        design = pipeline.create_design("alice", "sketches/plan.png")
        pipeline.request_analysis(design.design_id)
        pipeline.wait_idle(design.design_id, timeout=30)
"""

# Application layer (orchestration)
from archflow.application import (
    ComplianceAggregator,
    ConflictResolver,
    DesignPipeline,
    DesignProgress,
    JobScheduler,
    SchedulerConfig,
    load_scheduler_config,
)

# Domain exceptions
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

# Domain interfaces (for type hints and custom implementations)
from archflow.domain.interfaces import (
    CapabilityInterface,
    ReportStoreInterface,
    VersionStoreInterface,
)
from archflow.domain.models import (
    ComplianceReport,
    Design,
    DesignVersion,
    Job,
    JobKind,
    JobStatus,
    ResolutionStrategy,
    Stage,
    Violation,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Domain models
    "Design",
    "DesignVersion",
    "Stage",
    "Job",
    "JobKind",
    "JobStatus",
    "ComplianceReport",
    "Violation",
    "ResolutionStrategy",
    # Domain interfaces
    "CapabilityInterface",
    "VersionStoreInterface",
    "ReportStoreInterface",
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
    # Application
    "JobScheduler",
    "SchedulerConfig",
    "load_scheduler_config",
    "DesignPipeline",
    "DesignProgress",
    "ComplianceAggregator",
    "ConflictResolver",
]
