"""
Filesystem implementation of the Version Store.

Provides persistent, append-only storage for design versions: one JSON
object per version under prefix directories plus an index that is replaced
atomically on every append.

Several store instances, including ones in other processes, may share a
directory: the index is re-read before each append and on lookup misses.
Appends from different processes are not serialized against each other.
"""

import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from archflow.domain.exceptions import NotFoundError, ValidationError
from archflow.domain.interfaces import VersionStoreInterface
from archflow.domain.models import DesignVersion, Stage, VersionDelta
from archflow.domain.versioning import (
    diff_versions,
    freeze_payload,
    new_version,
    thaw_payload,
)


class FilesystemVersionStore(VersionStoreInterface):
    """
    Persistent, append-only version repository.

    Layout:
        <base_dir>/objects/<id[:2]>/<id>.json
        <base_dir>/index.json
    """

    def __init__(self, base_dir: str | Path):
        self._base_dir = Path(base_dir)
        self._objects_dir = self._base_dir / "objects"
        self._index_path = self._base_dir / "index.json"
        self._cache: dict[str, DesignVersion] = {}
        self._lock = threading.Lock()
        self._index: dict[str, Any] = self._load_or_create_index()

    def _load_or_create_index(self) -> dict[str, Any]:
        """Load existing index or create new one."""
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._objects_dir.mkdir(parents=True, exist_ok=True)

        if self._index_path.exists():
            with open(self._index_path) as f:
                result: dict[str, Any] = json.load(f)
                return result

        return {"version": "1.0", "versions": {}, "designs": {}, "children": {}}

    def _refresh_index(self) -> None:
        """Pick up versions other instances have appended. Call with the lock held."""
        if self._index_path.exists():
            with open(self._index_path) as f:
                self._index = json.load(f)

    def _update_index_atomic(self) -> None:
        """Atomically update index.json using write-to-temp + rename."""
        temp_path = self._index_path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump(self._index, f, indent=2)
        temp_path.replace(self._index_path)

    def _version_to_dict(self, version: DesignVersion) -> dict[str, Any]:
        return {
            "version_id": version.version_id,
            "design_id": version.design_id,
            "parent_id": version.parent_id,
            "merge_parent_id": version.merge_parent_id,
            "stage": version.stage.value,
            "content_hash": version.content_hash,
            "payload": thaw_payload(version.payload),
            "authored_by": version.authored_by,
            "created_at": version.created_at,
            "sequence": version.sequence,
            "note": version.note,
        }

    def _dict_to_version(self, data: dict[str, Any]) -> DesignVersion:
        return DesignVersion(
            version_id=data["version_id"],
            design_id=data["design_id"],
            parent_id=data["parent_id"],
            merge_parent_id=data.get("merge_parent_id"),
            stage=Stage(data["stage"]),
            content_hash=data["content_hash"],
            payload=freeze_payload(data["payload"]),
            authored_by=data["authored_by"],
            created_at=data["created_at"],
            sequence=data.get("sequence", 0),
            note=data.get("note", ""),
        )

    def _get_object_path(self, version_id: str) -> Path:
        return self._objects_dir / version_id[:2] / f"{version_id}.json"

    def commit(
        self,
        parent_id: str | None,
        payload: Mapping[str, Any],
        authored_by: str,
        *,
        stage: Stage,
        design_id: str | None = None,
        note: str = "",
        merge_parent_id: str | None = None,
    ) -> DesignVersion:
        if parent_id is not None:
            design_id = self.get(parent_id).design_id
        if merge_parent_id is not None:
            self.get(merge_parent_id)
        if design_id is None:
            raise ValidationError("A root version needs a design id")

        with self._lock:
            self._refresh_index()
            version = new_version(
                design_id=design_id,
                parent_id=parent_id,
                payload=payload,
                authored_by=authored_by,
                stage=stage,
                sequence=len(self._index["versions"]),
                note=note,
                merge_parent_id=merge_parent_id,
            )

            # 1. Write the immutable object first
            object_path = self._get_object_path(version.version_id)
            object_path.parent.mkdir(parents=True, exist_ok=True)
            with open(object_path, "w") as f:
                json.dump(self._version_to_dict(version), f, indent=2)

            # 2. Then publish it through the index
            self._index["versions"][version.version_id] = {
                "path": str(object_path.relative_to(self._base_dir)),
                "design_id": design_id,
                "parent_id": parent_id,
                "stage": version.stage.value,
                "created_at": version.created_at,
            }
            self._index["designs"].setdefault(design_id, []).append(version.version_id)
            if parent_id is not None:
                self._index["children"].setdefault(parent_id, []).append(
                    version.version_id
                )
            self._update_index_atomic()

            self._cache[version.version_id] = version
        return version

    def get(self, version_id: str) -> DesignVersion:
        """Retrieve version by ID (cache-first)."""
        if version_id in self._cache:
            return self._cache[version_id]

        with self._lock:
            if version_id not in self._index["versions"]:
                self._refresh_index()
            entry = self._index["versions"].get(version_id)
        if entry is None:
            raise NotFoundError(detail=f"Version not found: {version_id}")

        rel_path = entry["path"]
        with open(self._base_dir / rel_path) as f:
            data = json.load(f)

        version = self._dict_to_version(data)
        self._cache[version_id] = version
        return version

    def _indexed(self, section: str, key: str) -> list[str]:
        with self._lock:
            self._refresh_index()
            return list(self._index[section].get(key, []))

    def history(self, design_id: str) -> list[DesignVersion]:
        return [self.get(v) for v in self._indexed("designs", design_id)]

    def children(self, version_id: str) -> list[DesignVersion]:
        return [self.get(v) for v in self._indexed("children", version_id)]

    def diff(self, version_a: str, version_b: str) -> VersionDelta:
        return diff_versions(self.get(version_a), self.get(version_b))

    def design_ids(self) -> list[str]:
        """All designs with at least one stored version."""
        with self._lock:
            self._refresh_index()
            return list(self._index["designs"].keys())
