"""
In-memory implementations of the storage ports.

Useful for testing and single-process deployments.
"""

import threading
from collections.abc import Mapping
from typing import Any

from archflow.domain.exceptions import NotFoundError, ValidationError
from archflow.domain.interfaces import ReportStoreInterface, VersionStoreInterface
from archflow.domain.models import ComplianceReport, DesignVersion, Stage, VersionDelta
from archflow.domain.versioning import diff_versions, new_version


class InMemoryVersionStore(VersionStoreInterface):
    """Append-only version DAG held in a dict.

    The lock only guards the append itself; readers never wait on writers
    for longer than one dict insertion.
    """

    def __init__(self) -> None:
        self._versions: dict[str, DesignVersion] = {}
        self._by_design: dict[str, list[str]] = {}
        self._children: dict[str, list[str]] = {}
        self._lock = threading.Lock()

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
            version = new_version(
                design_id=design_id,
                parent_id=parent_id,
                payload=payload,
                authored_by=authored_by,
                stage=stage,
                sequence=len(self._versions),
                note=note,
                merge_parent_id=merge_parent_id,
            )
            self._versions[version.version_id] = version
            self._by_design.setdefault(design_id, []).append(version.version_id)
            if parent_id is not None:
                self._children.setdefault(parent_id, []).append(version.version_id)
        return version

    def get(self, version_id: str) -> DesignVersion:
        if version_id not in self._versions:
            raise NotFoundError(detail=f"Version not found: {version_id}")
        return self._versions[version_id]

    def history(self, design_id: str) -> list[DesignVersion]:
        return [self._versions[v] for v in self._by_design.get(design_id, [])]

    def children(self, version_id: str) -> list[DesignVersion]:
        return [self._versions[v] for v in self._children.get(version_id, [])]

    def diff(self, version_a: str, version_b: str) -> VersionDelta:
        return diff_versions(self.get(version_a), self.get(version_b))


class InMemoryReportStore(ReportStoreInterface):
    """Write-once report storage."""

    def __init__(self) -> None:
        self._reports: dict[str, ComplianceReport] = {}

    def save(self, report: ComplianceReport) -> str:
        if report.report_id in self._reports:
            raise ValidationError(detail=f"Report already stored: {report.report_id}")
        self._reports[report.report_id] = report
        return report.report_id

    def get(self, report_id: str) -> ComplianceReport:
        if report_id not in self._reports:
            raise NotFoundError(detail=f"Report not found: {report_id}")
        return self._reports[report_id]

    def for_version(self, version_id: str) -> list[ComplianceReport]:
        return [r for r in self._reports.values() if r.version_id == version_id]
