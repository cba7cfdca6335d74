"""
Persistence adapters for versions, reports and pipeline events.
"""

from archflow.infrastructure.persistence.filesystem import FilesystemVersionStore
from archflow.infrastructure.persistence.memory import (
    InMemoryReportStore,
    InMemoryVersionStore,
)
from archflow.infrastructure.persistence.pipeline_events import (
    FilesystemPipelineEventStore,
    InMemoryPipelineEventStore,
)

__all__ = [
    "InMemoryVersionStore",
    "FilesystemVersionStore",
    "InMemoryReportStore",
    "InMemoryPipelineEventStore",
    "FilesystemPipelineEventStore",
]
