"""
Domain interfaces (Ports) for the pipeline core.

These abstract base classes define the contracts that adapters must satisfy:
storage for versions, reports and pipeline events, and the external
capabilities jobs are dispatched to.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from archflow.domain.models import (
        ComplianceReport,
        DesignVersion,
        Job,
        Stage,
        VersionDelta,
    )
    from archflow.domain.pipeline_event import PipelineEvent, PipelineEventType


class VersionStoreInterface(ABC):
    """
    Port for version persistence.

    Append-only: a commit never overwrites an existing version. Two commits
    against the same parent are both accepted and become siblings.
    """

    @abstractmethod
    def commit(
        self,
        parent_id: str | None,
        payload: Mapping[str, Any],
        authored_by: str,
        *,
        stage: "Stage",
        design_id: str | None = None,
        note: str = "",
        merge_parent_id: str | None = None,
    ) -> "DesignVersion":
        """
        Append a new version.

        Args:
            parent_id: Parent version (None only for a design's root)
            payload: Version content; copied, never shared with the caller
            authored_by: "user:<id>" or "job:<kind>:<id>"
            stage: Stage the version is created at
            design_id: Required for a root version, inferred from the parent otherwise
            note: Free-text provenance note
            merge_parent_id: Second parent when joining two branches

        Returns:
            The stored version

        Raises:
            NotFoundError: If a parent does not exist
            ValidationError: If design_id is missing for a root version
        """
        pass

    @abstractmethod
    def get(self, version_id: str) -> "DesignVersion":
        """
        Retrieve a version by ID.

        Raises:
            NotFoundError: If version not found
        """
        pass

    @abstractmethod
    def history(self, design_id: str) -> list["DesignVersion"]:
        """All versions of a design in append order."""
        pass

    @abstractmethod
    def children(self, version_id: str) -> list["DesignVersion"]:
        """Versions whose parent_id is version_id, in append order."""
        pass

    @abstractmethod
    def diff(self, version_a: str, version_b: str) -> "VersionDelta":
        """Element-level delta from version_a to version_b."""
        pass


class ReportStoreInterface(ABC):
    """Port for compliance report persistence (write once)."""

    @abstractmethod
    def save(self, report: "ComplianceReport") -> str:
        """Store a report and return its id."""
        pass

    @abstractmethod
    def get(self, report_id: str) -> "ComplianceReport":
        """
        Raises:
            NotFoundError: If report not found
        """
        pass

    @abstractmethod
    def for_version(self, version_id: str) -> list["ComplianceReport"]:
        """Reports produced for a version, oldest first."""
        pass


class CapabilityInterface(ABC):
    """
    Port for an external capability (analysis, rendering, compliance
    reasoning, CAD/BIM encoding).

    Implementations raise TransientError for retryable failures,
    ValidationError (or AmbiguousInputError) for permanent rejections.
    """

    @property
    @abstractmethod
    def supports_cancel(self) -> bool:
        """Whether an in-flight call can be cancelled."""
        pass

    @abstractmethod
    def invoke(self, job: "Job") -> Mapping[str, Any]:
        """
        Perform the call for one job attempt.

        Args:
            job: Snapshot of the job being run (kind, input_ref, params)

        Returns:
            The capability's result payload
        """
        pass

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Cancel an in-flight call. Returns False when unsupported."""
        pass


class PipelineEventStoreInterface(ABC):
    """Port for the pipeline event trail."""

    @abstractmethod
    def store_event(self, event: "PipelineEvent") -> str:
        """Store an event and return its event_id."""
        pass

    @abstractmethod
    def get_events(
        self,
        design_id: str,
        event_type: "PipelineEventType | None" = None,
    ) -> list["PipelineEvent"]:
        """Events for a design ordered by creation time."""
        pass
