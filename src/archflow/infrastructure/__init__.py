"""
Infrastructure layer for the pipeline core.

Contains adapters for external concerns (persistence, capabilities, registry).
"""

from archflow.infrastructure.capabilities import (
    MockCapability,
    OpenAIComplianceCapability,
)
from archflow.infrastructure.persistence import (
    FilesystemPipelineEventStore,
    FilesystemVersionStore,
    InMemoryPipelineEventStore,
    InMemoryReportStore,
    InMemoryVersionStore,
)
from archflow.infrastructure.registry import CapabilityRegistry

__all__ = [
    # Persistence
    "InMemoryVersionStore",
    "FilesystemVersionStore",
    "InMemoryReportStore",
    "InMemoryPipelineEventStore",
    "FilesystemPipelineEventStore",
    # Capabilities
    "MockCapability",
    "OpenAIComplianceCapability",
    # Registry
    "CapabilityRegistry",
]
