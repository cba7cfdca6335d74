"""Pipeline event emission service."""

import uuid
from datetime import UTC, datetime

from archflow.domain.interfaces import PipelineEventStoreInterface
from archflow.domain.models import DesignVersion, FailureRecord, Stage
from archflow.domain.pipeline_event import PipelineEvent, PipelineEventType


class PipelineEventEmitter:
    """Emits pipeline events to a store.

    Provides convenience methods for the state changes the pipeline
    service performs, handling ID generation and timestamps.
    """

    def __init__(self, event_store: PipelineEventStoreInterface) -> None:
        self._store = event_store

    def _emit(self, event: PipelineEvent) -> str:
        return self._store.store_event(event)

    def _now(self) -> str:
        return datetime.now(UTC).isoformat()

    def _event(self, event_type: PipelineEventType, design_id: str, **fields: object) -> None:
        self._emit(
            PipelineEvent(
                event_id=str(uuid.uuid4()),
                event_type=event_type,
                design_id=design_id,
                created_at=self._now(),
                **fields,  # type: ignore[arg-type]
            )
        )

    def design_created(self, design_id: str, root: DesignVersion) -> None:
        """Emit DESIGN_CREATED when the root version is committed."""
        self._event(
            PipelineEventType.DESIGN_CREATED,
            design_id,
            version_id=root.version_id,
            stage=root.stage.value,
        )

    def job_submitted(self, design_id: str, job_id: str, kind: str, input_ref: str) -> None:
        """Emit JOB_SUBMITTED when a job is handed to the scheduler."""
        self._event(
            PipelineEventType.JOB_SUBMITTED,
            design_id,
            version_id=input_ref,
            job_id=job_id,
            summary=kind,
        )

    def job_discarded(self, design_id: str, job_id: str, reason: str) -> None:
        """Emit JOB_DISCARDED when a completion produces no version."""
        self._event(
            PipelineEventType.JOB_DISCARDED,
            design_id,
            job_id=job_id,
            summary=reason,
        )

    def version_committed(
        self, version: DesignVersion, job_id: str | None = None, head: bool = True
    ) -> None:
        """Emit VERSION_COMMITTED; history-only commits say so in the summary."""
        self._event(
            PipelineEventType.VERSION_COMMITTED,
            version.design_id,
            version_id=version.version_id,
            job_id=job_id,
            stage=version.stage.value,
            summary="head" if head else "history only",
        )

    def stage_advanced(self, design_id: str, version_id: str, before: Stage, after: Stage) -> None:
        """Emit STAGE_ADVANCED when the head moves to a different stage."""
        self._event(
            PipelineEventType.STAGE_ADVANCED,
            design_id,
            version_id=version_id,
            stage=after.value,
            summary=f"{before.value} -> {after.value}",
        )

    def clarification_requested(self, design_id: str, job_id: str, question: str) -> None:
        """Emit CLARIFICATION_REQUESTED when analysis reports ambiguous input."""
        self._event(
            PipelineEventType.CLARIFICATION_REQUESTED,
            design_id,
            job_id=job_id,
            summary=question[:500],
        )

    def design_failed(self, design_id: str, failure: FailureRecord) -> None:
        """Emit DESIGN_FAILED with the user-facing message only."""
        self._event(
            PipelineEventType.DESIGN_FAILED,
            design_id,
            job_id=failure.job_id,
            code=failure.code,
            summary=failure.user_message,
        )

    def rollback(self, version: DesignVersion, ancestor_id: str) -> None:
        """Emit ROLLBACK for a version restoring an ancestor's content."""
        self._event(
            PipelineEventType.ROLLBACK,
            version.design_id,
            version_id=version.version_id,
            stage=version.stage.value,
            summary=f"restored {ancestor_id}",
        )

    def conflict_resolved(self, version: DesignVersion) -> None:
        """Emit CONFLICT_RESOLVED when a resolution version becomes head."""
        self._event(
            PipelineEventType.CONFLICT_RESOLVED,
            version.design_id,
            version_id=version.version_id,
            stage=version.stage.value,
            summary=version.note,
        )
