"""Pipeline event store implementations."""

import json
import threading
from pathlib import Path
from typing import Any

from archflow.domain.interfaces import PipelineEventStoreInterface
from archflow.domain.pipeline_event import PipelineEvent, PipelineEventType


class InMemoryPipelineEventStore(PipelineEventStoreInterface):
    """In-memory implementation for testing."""

    def __init__(self) -> None:
        self._events: list[PipelineEvent] = []

    def store_event(self, event: PipelineEvent) -> str:
        self._events.append(event)
        return event.event_id

    def get_events(
        self,
        design_id: str,
        event_type: PipelineEventType | None = None,
    ) -> list[PipelineEvent]:
        return sorted(
            [
                e
                for e in self._events
                if e.design_id == design_id
                and (event_type is None or e.event_type == event_type)
            ],
            key=lambda e: e.created_at,
        )


class FilesystemPipelineEventStore(PipelineEventStoreInterface):
    """Filesystem implementation storing events as JSONL, one file per design."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)
        self.events_dir = self.base_path / "events"
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_design_file(self, design_id: str) -> Path:
        return self.events_dir / f"{design_id}.jsonl"

    def store_event(self, event: PipelineEvent) -> str:
        path = self._get_design_file(event.design_id)
        line = json.dumps(self._event_to_dict(event)) + "\n"
        with self._lock, open(path, "a") as f:
            f.write(line)
        return event.event_id

    def get_events(
        self,
        design_id: str,
        event_type: PipelineEventType | None = None,
    ) -> list[PipelineEvent]:
        path = self._get_design_file(design_id)
        if not path.exists():
            return []
        events: list[PipelineEvent] = []
        with open(path) as f:
            for line in f:
                event = self._dict_to_event(json.loads(line))
                if event_type and event.event_type != event_type:
                    continue
                events.append(event)
        return sorted(events, key=lambda e: e.created_at)

    def _event_to_dict(self, event: PipelineEvent) -> dict[str, Any]:
        """Serialize event to dict."""
        return {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "design_id": event.design_id,
            "version_id": event.version_id,
            "job_id": event.job_id,
            "stage": event.stage,
            "code": event.code,
            "summary": event.summary,
            "created_at": event.created_at,
        }

    def _dict_to_event(self, data: dict[str, Any]) -> PipelineEvent:
        """Deserialize dict to event."""
        return PipelineEvent(
            event_id=data["event_id"],
            event_type=PipelineEventType(data["event_type"]),
            design_id=data["design_id"],
            version_id=data.get("version_id"),
            job_id=data.get("job_id"),
            stage=data.get("stage"),
            code=data.get("code"),
            summary=data.get("summary", ""),
            created_at=data.get("created_at", ""),
        )
