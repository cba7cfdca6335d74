"""
Application layer for the pipeline core.

Contains the services that coordinate domain objects: scheduling, the
pipeline state machine, compliance aggregation and conflict resolution.
"""

from archflow.application.circuit_breaker import BreakerState, CircuitBreaker
from archflow.application.compliance import ComplianceAggregator
from archflow.application.config import (
    BreakerConfig,
    ComplianceConfig,
    KindConfig,
    RetryPolicy,
    SchedulerConfig,
    load_scheduler_config,
)
from archflow.application.conflicts import ConflictResolver
from archflow.application.pipeline import DesignPipeline, DesignProgress
from archflow.application.pipeline_event_emitter import PipelineEventEmitter
from archflow.application.scheduler import JobScheduler

__all__ = [
    "BreakerConfig",
    "BreakerState",
    "CircuitBreaker",
    "ComplianceAggregator",
    "ComplianceConfig",
    "ConflictResolver",
    "DesignPipeline",
    "DesignProgress",
    "JobScheduler",
    "KindConfig",
    "PipelineEventEmitter",
    "RetryPolicy",
    "SchedulerConfig",
    "load_scheduler_config",
]
