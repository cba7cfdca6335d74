"""
ConflictResolver: finds sibling versions whose edits overlap and reconciles
them into a new version joining both branches.

Overlapping edits are never decided silently: either the caller picks a
whole side (keep_a / keep_b) or names a side per overlapping element.
"""

import logging
from collections.abc import Mapping
from itertools import combinations
from typing import Any

from archflow.domain.exceptions import ConflictError, ValidationError
from archflow.domain.interfaces import VersionStoreInterface
from archflow.domain.models import (
    Conflict,
    DesignVersion,
    ResolutionStrategy,
    Stage,
)
from archflow.domain.versioning import canonical_json, element_index, thaw_payload

logger = logging.getLogger(__name__)

# Payload keys holding per-element data that must follow the element's side
PER_ELEMENT_KEYS = ("renders",)


class ConflictResolver:
    def __init__(self, versions: VersionStoreInterface):
        self._versions = versions

    def detect(self, design_id: str) -> list[Conflict]:
        """All unresolved sibling pairs of a design with overlapping edits."""
        history = self._versions.history(design_id)
        joined = {
            frozenset((v.parent_id, v.merge_parent_id))
            for v in history
            if v.merge_parent_id is not None
        }

        by_parent: dict[str, list[DesignVersion]] = {}
        for version in history:
            if version.parent_id is not None:
                by_parent.setdefault(version.parent_id, []).append(version)

        conflicts = []
        for parent_id, siblings in by_parent.items():
            for a, b in combinations(siblings, 2):
                if frozenset((a.version_id, b.version_id)) in joined:
                    continue
                overlap = self._overlap(parent_id, a, b)
                if overlap:
                    conflicts.append(
                        Conflict(
                            parent_id=parent_id,
                            version_a=a.version_id,
                            version_b=b.version_id,
                            overlapping_element_ids=overlap,
                        )
                    )
        return conflicts

    def resolve(
        self,
        version_a: str,
        version_b: str,
        strategy: ResolutionStrategy | None = None,
        choices: Mapping[str, str] | None = None,
        authored_by: str = "user:unknown",
    ) -> DesignVersion:
        """
        Commit a version reconciling two siblings.

        Args:
            version_a: First sibling (becomes the resolution's parent)
            version_b: Second sibling (becomes its merge parent)
            strategy: keep_a, keep_b or merge; None merges only when edits do not overlap
            choices: For merge, "a" or "b" per overlapping element id
            authored_by: Who resolved the conflict

        Raises:
            ValidationError: If the versions are not siblings
            ConflictError: If overlapping edits have no explicit decision
        """
        a = self._versions.get(version_a)
        b = self._versions.get(version_b)
        if a.parent_id is None or a.parent_id != b.parent_id:
            raise ValidationError(
                "Only versions branching from the same parent can be reconciled.",
                detail=f"{a.version_id} parent={a.parent_id}, {b.version_id} parent={b.parent_id}",
            )
        overlap = self._overlap(a.parent_id, a, b)
        conflict = Conflict(a.parent_id, a.version_id, b.version_id, overlap)

        if strategy is None:
            if overlap:
                raise ConflictError(
                    "Both edits change the same elements; choose how to resolve them.",
                    detail=f"overlapping: {', '.join(overlap)}",
                    conflict=conflict,
                )
            strategy = ResolutionStrategy.MERGE

        if strategy is ResolutionStrategy.KEEP_A:
            payload, stage = thaw_payload(a.payload), a.stage
        elif strategy is ResolutionStrategy.KEEP_B:
            payload, stage = thaw_payload(b.payload), b.stage
        else:
            payload = self._merge(a, b, overlap, choices or {}, conflict)
            stage = a.stage if a.stage is b.stage else Stage.REFINING

        resolution = self._versions.commit(
            a.version_id,
            payload,
            authored_by,
            stage=stage,
            merge_parent_id=b.version_id,
            note=f"resolved {strategy.value}",
        )
        logger.info(
            "Resolved %s / %s with %s into %s",
            a.version_id,
            b.version_id,
            strategy.value,
            resolution.version_id,
        )
        return resolution

    def _overlap(
        self, parent_id: str, a: DesignVersion, b: DesignVersion
    ) -> tuple[str, ...]:
        touched_a = self._versions.diff(parent_id, a.version_id).touched
        touched_b = self._versions.diff(parent_id, b.version_id).touched
        return tuple(sorted(touched_a & touched_b))

    def _merge(
        self,
        a: DesignVersion,
        b: DesignVersion,
        overlap: tuple[str, ...],
        choices: Mapping[str, str],
        conflict: Conflict,
    ) -> dict[str, Any]:
        undecided = [eid for eid in overlap if choices.get(eid) not in ("a", "b")]
        if undecided:
            raise ConflictError(
                "Some elements were changed on both sides; pick a side for each.",
                detail=f"undecided: {', '.join(undecided)}",
                conflict=conflict,
            )

        parent = self._versions.get(conflict.parent_id)
        touched_a = self._versions.diff(parent.version_id, a.version_id).touched
        touched_b = self._versions.diff(parent.version_id, b.version_id).touched

        side_of: dict[str, DesignVersion] = {}
        for eid in touched_a - set(overlap):
            side_of[eid] = a
        for eid in touched_b - set(overlap):
            side_of[eid] = b
        for eid in overlap:
            side_of[eid] = a if choices[eid] == "a" else b

        merged = thaw_payload(parent.payload)

        elements = dict(element_index(merged))
        for version in (a, b):
            source = element_index(version.payload)
            for eid, side in side_of.items():
                if side is not version:
                    continue
                if eid in source:
                    elements[eid] = thaw_payload(source[eid])
                else:
                    elements.pop(eid, None)
        merged["elements"] = list(elements.values())

        for key in PER_ELEMENT_KEYS:
            per_element = dict(merged.get(key, {}))
            for eid, side in side_of.items():
                source = side.payload.get(key, {})
                if eid in source:
                    per_element[eid] = thaw_payload(source[eid])
                else:
                    per_element.pop(eid, None)
            if per_element or key in merged:
                merged[key] = per_element

        # Other keys: a wins unless only b changed them
        for key in set(a.payload) | set(b.payload):
            if key == "elements" or key in PER_ELEMENT_KEYS:
                continue
            a_changed = _differs(parent.payload.get(key), a.payload.get(key))
            b_changed = _differs(parent.payload.get(key), b.payload.get(key))
            source_version = b if b_changed and not a_changed else a
            if key in source_version.payload:
                merged[key] = thaw_payload(source_version.payload[key])
            else:
                merged.pop(key, None)
        return merged


def _differs(left: Any, right: Any) -> bool:
    return canonical_json({"v": left}) != canonical_json({"v": right})
