"""
Content addressing and element-level diffs for design versions.

Pure functions shared by every VersionStoreInterface implementation and by
the conflict resolver.
"""

import hashlib
import json
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from archflow.domain.models import DesignVersion, ElementChange, Stage, VersionDelta


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Deterministic serialization: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_default)


def _default(value: Any) -> Any:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, tuple | frozenset | set):
        return list(value)
    raise TypeError(f"Payload value is not JSON serializable: {type(value).__name__}")


def compute_content_hash(payload: Mapping[str, Any]) -> str:
    """Hex-encoded SHA-256 of the canonical payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def freeze_payload(value: Any) -> Any:
    """Recursively convert dicts to read-only mappings and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze_payload(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(freeze_payload(v) for v in value)
    return value


def thaw_payload(value: Any) -> Any:
    """Mutable deep copy of a (possibly frozen) payload, for building the next one."""
    if isinstance(value, Mapping):
        return {k: thaw_payload(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [thaw_payload(v) for v in value]
    return value


def element_index(payload: Mapping[str, Any]) -> dict[str, Mapping[str, Any]]:
    """Map element id -> element for a payload's element list."""
    return {str(e["id"]): e for e in payload.get("elements", ())}


def diff_payloads(
    from_version_id: str,
    to_version_id: str,
    before: Mapping[str, Any],
    after: Mapping[str, Any],
) -> VersionDelta:
    """
    Compute the element-level delta between two payloads.

    Elements are matched by id. An element is modified when any of its fields
    differ; the changed field names are reported. Keys outside "elements"
    only set payload_changed.
    """
    old = element_index(before)
    new = element_index(after)

    added = tuple(eid for eid in new if eid not in old)
    removed = tuple(eid for eid in old if eid not in new)
    modified = []
    for eid, element in new.items():
        if eid not in old:
            continue
        previous = old[eid]
        keys = set(previous) | set(element)
        changed = tuple(
            sorted(k for k in keys if _normalize(previous.get(k)) != _normalize(element.get(k)))
        )
        if changed:
            modified.append(ElementChange(element_id=eid, changed_fields=changed))

    rest_before = {k: v for k, v in before.items() if k != "elements"}
    rest_after = {k: v for k, v in after.items() if k != "elements"}

    return VersionDelta(
        from_version_id=from_version_id,
        to_version_id=to_version_id,
        added=added,
        removed=removed,
        modified=tuple(modified),
        payload_changed=canonical_json(rest_before) != canonical_json(rest_after),
    )


def new_version(
    *,
    design_id: str,
    parent_id: str | None,
    payload: Mapping[str, Any],
    authored_by: str,
    stage: Stage,
    sequence: int,
    note: str = "",
    merge_parent_id: str | None = None,
) -> DesignVersion:
    """Build a version with a fresh id, frozen payload and content hash."""
    if stage is Stage.FAILED:
        raise ValueError("Versions are never recorded at the failed stage")
    frozen = freeze_payload(payload)
    return DesignVersion(
        version_id=str(uuid.uuid4()),
        design_id=design_id,
        parent_id=parent_id,
        stage=stage,
        content_hash=compute_content_hash(frozen),
        payload=frozen,
        authored_by=authored_by,
        created_at=datetime.now(UTC).isoformat(),
        sequence=sequence,
        merge_parent_id=merge_parent_id,
        note=note,
    )


def diff_versions(a: DesignVersion, b: DesignVersion) -> VersionDelta:
    return diff_payloads(a.version_id, b.version_id, a.payload, b.payload)


def _normalize(value: Any) -> str:
    # Compare through canonical JSON so tuples and lists, proxies and dicts match
    return json.dumps(value, sort_keys=True, default=_default)
