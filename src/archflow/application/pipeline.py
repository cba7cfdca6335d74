"""
DesignPipeline: drives designs through their stages.

Requests validate the stage transition, hand work to the JobScheduler and
return immediately. Completion events from the scheduler (and reports from
the ComplianceAggregator) commit new versions and move the design head.

Ordering: a completion for a version that is no longer the head is kept in
history as a sibling and never moves the head or the stage.
"""

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import jsonschema

from archflow.application.compliance import ComplianceAggregator
from archflow.application.conflicts import ConflictResolver
from archflow.application.pipeline_event_emitter import PipelineEventEmitter
from archflow.application.scheduler import JobScheduler
from archflow.domain.exceptions import (
    AmbiguousInputError,
    FatalError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    PolicyError,
    ValidationError,
)
from archflow.domain.interfaces import (
    PipelineEventStoreInterface,
    ReportStoreInterface,
    VersionStoreInterface,
)
from archflow.domain.models import (
    CompletionEvent,
    ComplianceReport,
    Conflict,
    Design,
    DesignVersion,
    FailureRecord,
    Job,
    JobError,
    JobKind,
    JobRequest,
    JobStatus,
    ResolutionStrategy,
    Stage,
)
from archflow.domain.pipeline import TRANSITIONS, Action, check_transition, target_stage
from archflow.domain.versioning import thaw_payload
from archflow.schemas import validate_elements

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class _Pending:
    """What a submitted job was for."""

    design_id: str
    action: Action
    input_version_id: str
    context: Mapping[str, Any] = field(default_factory=dict)
    resubmit: Callable[[], Any] | None = field(default=None, compare=False)


@dataclass
class _ComplianceRun:
    design_id: str
    input_version_id: str
    job_ids: tuple[str, ...] = ()
    done: bool = False
    cancelled: bool = False
    resubmit: Callable[[], Any] | None = None


@dataclass(frozen=True)
class DesignProgress:
    """Status snapshot for a progress endpoint."""

    design_id: str
    stage: Stage
    head_version_id: str
    jobs: tuple[Job, ...]
    failure: FailureRecord | None
    clarification: str | None


class DesignPipeline:
    """
    Pipeline state machine service.

    Usage:
        pipeline = DesignPipeline(scheduler, versions, reports, events)
        design = pipeline.create_design("alice", "s3://sketches/plan.png")
        pipeline.request_analysis(design.design_id)
        pipeline.wait_idle(design.design_id, timeout=60)
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        versions: VersionStoreInterface,
        reports: ReportStoreInterface,
        events: PipelineEventStoreInterface,
        aggregator: ComplianceAggregator | None = None,
        resolver: ConflictResolver | None = None,
    ):
        """
        Args:
            scheduler: Dispatcher for all external capability calls
            versions: Version DAG storage
            reports: Compliance report storage
            events: Event trail storage
            aggregator: Compliance aggregator (created on the scheduler if None)
            resolver: Conflict resolver (created on the version store if None)
        """
        self._scheduler = scheduler
        self._versions = versions
        self._reports = reports
        self._emitter = PipelineEventEmitter(events)
        self._aggregator = aggregator or ComplianceAggregator(scheduler)
        self._resolver = resolver or ConflictResolver(versions)

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._designs: dict[str, Design] = {}
        self._pending: dict[str, _Pending] = {}
        self._early: dict[str, CompletionEvent] = {}
        self._submitting = 0
        self._compliance_runs: dict[str, _ComplianceRun] = {}
        self._retry_with: dict[str, Callable[[], Any]] = {}  # design_id -> failed request
        scheduler.subscribe(self._on_completion)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_design(self, design_id: str) -> Design:
        """Snapshot of a design record.

        Raises:
            NotFoundError: If the design is unknown
        """
        with self._lock:
            design = self._design(design_id)
            return replace(
                design,
                version_ids=list(design.version_ids),
                in_flight_job_ids=list(design.in_flight_job_ids),
            )

    def stage(self, design_id: str) -> Stage:
        with self._lock:
            return self._stage(self._design(design_id))

    def history(self, design_id: str) -> list[DesignVersion]:
        """Every version of the design, siblings included, in append order."""
        with self._lock:
            self._design(design_id)
        return self._versions.history(design_id)

    def head(self, design_id: str) -> DesignVersion:
        with self._lock:
            head_id = self._design(design_id).head_version_id
        return self._versions.get(head_id)

    def progress(self, design_id: str) -> DesignProgress:
        with self._lock:
            design = self._design(design_id)
            return DesignProgress(
                design_id=design_id,
                stage=self._stage(design),
                head_version_id=design.head_version_id,
                jobs=tuple(self._scheduler.status(j) for j in design.in_flight_job_ids),
                failure=design.failure,
                clarification=design.clarification,
            )

    def get_report(self, report_id: str) -> ComplianceReport:
        return self._reports.get(report_id)

    def compliance_reports(self, design_id: str) -> list[ComplianceReport]:
        """Reports for every version of the design, in version append order.

        Includes reports that never reached the head: cancelled runs, runs on
        superseded versions and runs where no rule-set could be evaluated.
        """
        return [
            report
            for version in self.history(design_id)
            for report in self._reports.for_version(version.version_id)
        ]

    def wait_idle(self, design_id: str, timeout: float | None = None) -> Design:
        """
        Block until the design has no in-flight jobs.

        Raises:
            TimeoutError: If jobs are still in flight after timeout seconds
        """
        with self._idle:
            design = self._design(design_id)
            if not self._idle.wait_for(lambda: not design.in_flight_job_ids, timeout):
                raise TimeoutError(
                    f"Design {design_id} still has {len(design.in_flight_job_ids)} job(s) in flight"
                )
            return self.get_design(design_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_design(
        self,
        owner: str,
        sketch_ref: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Design:
        """Register a sketch and commit its root version at uploaded."""
        design_id = str(uuid.uuid4())
        root = self._versions.commit(
            None,
            {"sketch": sketch_ref, "metadata": dict(metadata or {}), "elements": []},
            f"user:{owner}",
            stage=Stage.UPLOADED,
            design_id=design_id,
            note="upload",
        )
        now = _now()
        design = Design(
            design_id=design_id,
            owner=owner,
            head_version_id=root.version_id,
            created_at=now,
            updated_at=now,
            version_ids=[root.version_id],
        )
        with self._lock:
            self._designs[design_id] = design
        self._emitter.design_created(design_id, root)
        logger.info("Design %s created by %s", design_id, owner)
        return self.get_design(design_id)

    def request_analysis(self, design_id: str, clarification: str | None = None) -> str:
        """
        Submit the sketch for analysis.

        Args:
            design_id: Design at stage uploaded
            clarification: Answer to a previous clarification question

        Returns:
            The analyze job id
        """
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.ANALYZE, self._stage(design))
            head = self._versions.get(design.head_version_id)
            params: dict[str, Any] = {
                "sketch": head.payload.get("sketch"),
                "metadata": thaw_payload(head.payload.get("metadata", {})),
            }
            if clarification is not None:
                params["clarification"] = clarification
            elif design.clarification is not None:
                logger.info("Re-analyzing %s without answering the open question", design_id)
            design.clarification = None
            return self._submit(
                design,
                Action.ANALYZE,
                head,
                params,
                resubmit=lambda: self.request_analysis(design_id, clarification),
            )

    def request_render(
        self, design_id: str, preferences: Mapping[str, Any] | None = None
    ) -> str:
        """Render every element of the analyzed head version."""
        preferences = dict(preferences or {})
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.RENDER, self._stage(design))
            head = self._versions.get(design.head_version_id)
            return self._submit(
                design,
                Action.RENDER,
                head,
                {
                    "elements": thaw_payload(head.elements),
                    "element_ids": None,
                    "preferences": preferences,
                },
                resubmit=lambda: self.request_render(design_id, preferences),
            )

    def refine(
        self,
        design_id: str,
        modifications: Mapping[str, Mapping[str, Any] | None],
        preferences: Mapping[str, Any] | None = None,
        authored_by: str | None = None,
        base_version_id: str | None = None,
    ) -> DesignVersion:
        """
        Commit a refining version and re-render only what changed.

        Args:
            design_id: Design at visualized, refining or compliance_checked
            modifications: Element id -> changed fields (new id adds the
                element, None removes it)
            preferences: Render preferences for the re-render
            authored_by: Author of the edit (defaults to the owner)
            base_version_id: Version the edit was made against; an edit
                against a version other than the head is committed as a
                sibling for the conflict resolver and starts no render

        Returns:
            The committed refining version

        Raises:
            ValidationError: If the modifications are empty, name unknown
                elements or break the element schema
        """
        if not modifications:
            raise ValidationError("Name at least one element to change.")
        preferences = dict(preferences or {})
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.REFINE, self._stage(design))
            base = self._versions.get(base_version_id or design.head_version_id)
            if base.design_id != design_id:
                raise NotFoundError(detail=f"Version {base.version_id} is not part of {design_id}")

            payload, changed = _apply_modifications(base, modifications)
            version = self._versions.commit(
                base.version_id,
                payload,
                authored_by or f"user:{design.owner}",
                stage=Stage.REFINING,
                note=f"refine {', '.join(sorted(modifications))}",
            )
            design.version_ids.append(version.version_id)

            if base.version_id != design.head_version_id:
                design.updated_at = _now()
                self._emitter.version_committed(version, head=False)
                logger.info(
                    "Refinement %s of %s was based on %s, not the head; kept as a branch",
                    version.version_id,
                    design_id,
                    base.version_id,
                )
                return version

            self._move_head(design, version)
            if changed:
                self._rerender(design_id, changed, preferences)
            return version

    def request_compliance(
        self, design_id: str, rule_sets: Iterable[str] = ()
    ) -> tuple[str, ...]:
        """
        Check the head version against the requested (plus mandatory) rule-sets.

        Returns:
            One check-compliance job id per rule-set
        """
        rule_sets = tuple(rule_sets)
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.CHECK_COMPLIANCE, self._stage(design))
            head = self._versions.get(design.head_version_id)
            run = _ComplianceRun(
                design_id,
                head.version_id,
                resubmit=lambda: self.request_compliance(design_id, rule_sets),
            )
            run_id = str(uuid.uuid4())
            self._compliance_runs[run_id] = run

            try:
                job_ids = self._aggregator.start(
                    head, rule_sets, lambda report: self._on_report(run_id, report)
                )
            except PipelineError:
                del self._compliance_runs[run_id]
                raise
            run.job_ids = job_ids
            for job_id in job_ids:
                self._emitter.job_submitted(
                    design_id, job_id, JobKind.CHECK_COMPLIANCE.value, head.version_id
                )
            if not run.done:
                design.in_flight_job_ids.extend(job_ids)
            return job_ids

    def request_export(
        self,
        design_id: str,
        target_format: str,
        acknowledge_violations: bool = False,
    ) -> str:
        """
        Encode the compliance-checked head into a CAD/BIM file.

        Raises:
            PolicyError: If the attached report is not compliant and the
                violations were not acknowledged
        """
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.EXPORT, self._stage(design))
            head = self._versions.get(design.head_version_id)
            report_id = head.payload.get("compliance_report_id")
            if report_id is None:
                raise PolicyError(
                    "Export needs a compliance report on the current version.",
                    detail=f"head {head.version_id} has no compliance_report_id",
                )
            report = self._reports.get(report_id)
            if not report.overall_compliant:
                if not acknowledge_violations:
                    raise PolicyError(
                        "The design is not compliant. Acknowledge the violations to export anyway.",
                        detail=(
                            f"report {report.report_id}: critical={report.critical_count} "
                            f"missing={','.join(report.rule_sets_missing) or '-'}"
                        ),
                    )
                logger.warning(
                    "Exporting non-compliant design %s with acknowledged violations (report %s)",
                    design_id,
                    report.report_id,
                )
            return self._submit(
                design,
                Action.EXPORT,
                head,
                {
                    "format": target_format,
                    "snapshot": thaw_payload(head.payload),
                    "report_id": report.report_id,
                },
                context={"format": target_format, "acknowledged": acknowledge_violations},
                resubmit=lambda: self.request_export(
                    design_id, target_format, acknowledge_violations
                ),
            )

    def request_lighting(
        self, design_id: str, preferences: Mapping[str, Any] | None = None
    ) -> str:
        """Simulate lighting and produce a walkthrough video of the head."""
        preferences = dict(preferences or {})
        with self._lock:
            design = self._design(design_id)
            check_transition(Action.SIMULATE_LIGHTING, self._stage(design))
            head = self._versions.get(design.head_version_id)
            return self._submit(
                design,
                Action.SIMULATE_LIGHTING,
                head,
                {
                    "elements": thaw_payload(head.elements),
                    "renders": thaw_payload(head.payload.get("renders", {})),
                    "preferences": preferences,
                },
                resubmit=lambda: self.request_lighting(design_id, preferences),
            )

    def retry(self, design_id: str) -> Any:
        """
        Clear the failure and resubmit the request that failed.

        Returns:
            Whatever the resubmitted request returns (job id or job ids)

        Raises:
            InvalidTransitionError: If the design has not failed
        """
        with self._lock:
            design = self._design(design_id)
            failure = design.failure
            resubmit = self._retry_with.get(design_id)
            if failure is None or resubmit is None:
                raise InvalidTransitionError(
                    "There is no failed request to retry.",
                    detail=f"design {design_id} stage={self._stage(design).value}",
                )
            design.failure = None
            try:
                result = resubmit()
            except PipelineError:
                design.failure = failure
                raise
            logger.info("Retrying %s after %s failure", design_id, failure.code)
            return result

    def rollback(
        self,
        design_id: str,
        ancestor_version_id: str,
        authored_by: str | None = None,
    ) -> DesignVersion:
        """
        Restore an ancestor's content and stage as a new head version.

        History is never rewritten: the new version's parent is the current
        head. Clears any failure or pending clarification.

        Raises:
            ValidationError: If the version is not an ancestor of the head
        """
        with self._lock:
            design = self._design(design_id)
            ancestor = self._versions.get(ancestor_version_id)
            if not self._is_ancestor(ancestor_version_id, design.head_version_id):
                raise ValidationError(
                    "Only versions in the current lineage can be restored.",
                    detail=f"{ancestor_version_id} is not an ancestor of {design.head_version_id}",
                )
            version = self._versions.commit(
                design.head_version_id,
                thaw_payload(ancestor.payload),
                authored_by or f"user:{design.owner}",
                stage=ancestor.stage,
                note=f"rollback to {ancestor_version_id}",
            )
            design.version_ids.append(version.version_id)
            design.failure = None
            design.clarification = None
            self._move_head(design, version)
            self._emitter.rollback(version, ancestor_version_id)
            logger.info("Design %s rolled back to %s", design_id, ancestor_version_id)
            return version

    def cancel(self, design_id: str) -> int:
        """Cancel every in-flight job of the design. Returns how many were cancelled."""
        with self._lock:
            design = self._design(design_id)
            for run in self._compliance_runs.values():
                if run.design_id == design_id:
                    run.cancelled = True
            job_ids = list(design.in_flight_job_ids)
            cancelled = sum(1 for job_id in job_ids if self._scheduler.cancel(job_id))
        logger.info("Cancelled %d job(s) of design %s", cancelled, design_id)
        return cancelled

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def detect_conflicts(self, design_id: str) -> list[Conflict]:
        with self._lock:
            self._design(design_id)
        return self._resolver.detect(design_id)

    def resolve_conflict(
        self,
        design_id: str,
        version_a: str,
        version_b: str,
        strategy: ResolutionStrategy | None = None,
        choices: Mapping[str, str] | None = None,
        authored_by: str | None = None,
    ) -> DesignVersion:
        """Resolve two siblings and make the resolution the head."""
        with self._lock:
            design = self._design(design_id)
            owner = design.owner
            for version_id in (version_a, version_b):
                if self._versions.get(version_id).design_id != design_id:
                    raise NotFoundError(
                        detail=f"Version {version_id} is not part of {design_id}"
                    )
        resolution = self._resolver.resolve(
            version_a, version_b, strategy, choices, authored_by or f"user:{owner}"
        )
        self.adopt(design_id, resolution.version_id)
        return resolution

    def adopt(self, design_id: str, version_id: str) -> DesignVersion:
        """
        Make a conflict resolution version the head.

        Raises:
            PolicyError: If the version does not join two branches
        """
        with self._lock:
            design = self._design(design_id)
            version = self._versions.get(version_id)
            if version.design_id != design_id:
                raise NotFoundError(detail=f"Version {version_id} is not part of {design_id}")
            if version.merge_parent_id is None:
                raise PolicyError(
                    "Only a conflict resolution can be adopted as the head.",
                    detail=f"{version_id} has no merge parent",
                )
            if version_id not in design.version_ids:
                design.version_ids.append(version_id)
            self._move_head(design, version)
            self._emitter.conflict_resolved(version)
            return version

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _design(self, design_id: str) -> Design:
        design = self._designs.get(design_id)
        if design is None:
            raise NotFoundError(detail=f"Design not found: {design_id}")
        return design

    def _stage(self, design: Design) -> Stage:
        if design.failure is not None:
            return Stage.FAILED
        return self._versions.get(design.head_version_id).stage

    def _is_ancestor(self, candidate: str, version_id: str) -> bool:
        seen: set[str] = set()
        frontier = [version_id]
        while frontier:
            current = frontier.pop()
            if current == candidate:
                return True
            if current in seen:
                continue
            seen.add(current)
            version = self._versions.get(current)
            frontier.extend(p for p in (version.parent_id, version.merge_parent_id) if p)
        return False

    def _rerender(
        self, design_id: str, element_ids: tuple[str, ...], preferences: Mapping[str, Any]
    ) -> str:
        design = self._design(design_id)
        check_transition(Action.RERENDER, self._stage(design))
        head = self._versions.get(design.head_version_id)
        elements = head.element_map()
        return self._submit(
            design,
            Action.RERENDER,
            head,
            {
                "elements": [thaw_payload(elements[eid]) for eid in element_ids],
                "element_ids": list(element_ids),
                "preferences": dict(preferences),
            },
            context={"element_ids": element_ids},
            resubmit=lambda: self._rerender_locked(design_id, element_ids, preferences),
        )

    def _rerender_locked(
        self, design_id: str, element_ids: tuple[str, ...], preferences: Mapping[str, Any]
    ) -> str:
        with self._lock:
            return self._rerender(design_id, element_ids, preferences)

    def _submit(
        self,
        design: Design,
        action: Action,
        version: DesignVersion,
        params: Mapping[str, Any],
        resubmit: Callable[[], Any],
        context: Mapping[str, Any] | None = None,
    ) -> str:
        kind = TRANSITIONS[action].job_kind
        assert kind is not None
        self._submitting += 1
        try:
            job_id = self._scheduler.submit(
                JobRequest(
                    kind=kind,
                    input_ref=version.version_id,
                    params=params,
                    design_id=design.design_id,
                )
            )
        finally:
            self._submitting -= 1
        self._pending[job_id] = _Pending(
            design.design_id, action, version.version_id, dict(context or {}), resubmit
        )
        design.in_flight_job_ids.append(job_id)
        self._emitter.job_submitted(design.design_id, job_id, kind.value, version.version_id)
        logger.info(
            "Design %s: %s submitted as job %s on %s",
            design.design_id,
            action.value,
            job_id,
            version.version_id,
        )

        early = self._early.pop(job_id, None)
        if early is not None:
            self._on_completion(early)
        return job_id

    def _untrack(self, design: Design, job_id: str) -> None:
        if job_id in design.in_flight_job_ids:
            design.in_flight_job_ids.remove(job_id)
            self._idle.notify_all()

    def _move_head(self, design: Design, version: DesignVersion, job_id: str | None = None) -> None:
        before = self._versions.get(design.head_version_id).stage
        design.head_version_id = version.version_id
        design.updated_at = _now()
        self._emitter.version_committed(version, job_id)
        if before is not version.stage:
            self._emitter.stage_advanced(design.design_id, version.version_id, before, version.stage)
            logger.info(
                "Design %s: %s -> %s (%s)",
                design.design_id,
                before.value,
                version.stage.value,
                version.version_id,
            )

    def _fail(
        self,
        design: Design,
        error: JobError,
        job_id: str | None,
        resubmit: Callable[[], Any] | None,
    ) -> None:
        failure = FailureRecord(
            code=error.code, user_message=error.message, job_id=job_id, at=_now()
        )
        design.failure = failure
        design.updated_at = failure.at
        if resubmit is None:
            self._retry_with.pop(design.design_id, None)
        else:
            self._retry_with[design.design_id] = resubmit
        self._emitter.design_failed(design.design_id, failure)
        logger.warning(
            "Design %s failed (%s): %s", design.design_id, error.code, error.detail or error.message
        )

    def _discard(self, design: Design, job_id: str, reason: str) -> None:
        self._emitter.job_discarded(design.design_id, job_id, reason)
        logger.info("Design %s: result of job %s discarded (%s)", design.design_id, job_id, reason)

    def _commit_result(
        self,
        design: Design,
        action: Action,
        input_version_id: str,
        payload: Mapping[str, Any],
        authored_by: str,
        job_id: str | None,
    ) -> DesignVersion:
        source = self._versions.get(input_version_id)
        version = self._versions.commit(
            input_version_id,
            payload,
            authored_by,
            stage=target_stage(action, source.stage),
            note=action.value,
        )
        design.version_ids.append(version.version_id)
        if design.head_version_id != input_version_id:
            design.updated_at = _now()
            self._emitter.version_committed(version, job_id, head=False)
            logger.info(
                "Design %s: %s result for superseded %s kept as history (%s)",
                design.design_id,
                action.value,
                input_version_id,
                version.version_id,
            )
            return version
        self._move_head(design, version, job_id)
        return version

    # ------------------------------------------------------------------
    # Completion handling
    # ------------------------------------------------------------------

    def _on_completion(self, event: CompletionEvent) -> None:
        with self._lock:
            pending = self._pending.pop(event.job_id, None)
            if pending is None:
                if self._submitting and event.kind is not JobKind.CHECK_COMPLIANCE:
                    self._early[event.job_id] = event
                return
            design = self._designs[pending.design_id]
            try:
                self._settle(design, pending, event)
            finally:
                self._untrack(design, event.job_id)

    def _settle(self, design: Design, pending: _Pending, event: CompletionEvent) -> None:
        if event.status is JobStatus.CANCELLED:
            self._discard(design, event.job_id, "cancelled")
            return

        superseded = design.head_version_id != pending.input_version_id
        if event.status is JobStatus.FAILED:
            error = event.error or FatalError().to_job_error()
            if superseded:
                self._discard(design, event.job_id, f"superseded, {error.code}")
            elif error.code == AmbiguousInputError.code and pending.action is Action.ANALYZE:
                design.clarification = error.message
                design.updated_at = _now()
                self._emitter.clarification_requested(design.design_id, event.job_id, error.message)
                logger.info("Design %s needs clarification: %s", design.design_id, error.detail)
            else:
                self._fail(design, error, event.job_id, pending.resubmit)
            return

        try:
            source = self._versions.get(pending.input_version_id)
            payload = _apply_result(pending, source, event.result or {})
        except PipelineError as e:
            if superseded:
                self._discard(design, event.job_id, f"superseded, {e.code}")
            else:
                self._fail(design, e.to_job_error(), event.job_id, pending.resubmit)
            return
        self._commit_result(
            design,
            pending.action,
            pending.input_version_id,
            payload,
            f"job:{event.kind.value}:{event.job_id}",
            event.job_id,
        )

    def _on_report(self, run_id: str, report: ComplianceReport) -> None:
        with self._lock:
            run = self._compliance_runs.pop(run_id)
            run.done = True
            design = self._designs[run.design_id]
            for job_id in run.job_ids:
                self._untrack(design, job_id)

            self._reports.save(report)
            if run.cancelled:
                logger.info("Design %s: compliance report %s discarded (cancelled)", run.design_id, report.report_id)
                return
            if not report.rule_sets_evaluated:
                if design.head_version_id == run.input_version_id:
                    self._fail(
                        design,
                        FatalError(
                            "No compliance rule-set could be evaluated.",
                            detail=f"report {report.report_id}: missing {','.join(report.rule_sets_missing)}",
                        ).to_job_error(),
                        None,
                        run.resubmit,
                    )
                return

            source = self._versions.get(run.input_version_id)
            payload = thaw_payload(source.payload)
            payload["compliance_report_id"] = report.report_id
            self._commit_result(
                design,
                Action.CHECK_COMPLIANCE,
                run.input_version_id,
                payload,
                f"job:{JobKind.CHECK_COMPLIANCE.value}:{report.report_id}",
                None,
            )


# ----------------------------------------------------------------------
# Payload construction
# ----------------------------------------------------------------------


def _validated_elements(elements: Any, message: str) -> list[dict[str, Any]]:
    """Check an element list against the element schema and for unique ids."""
    data = {"elements": thaw_payload(elements) if elements is not None else None}
    try:
        validate_elements(data)
    except jsonschema.ValidationError as e:
        raise ValidationError(message, detail=e.message) from e
    ids = [e["id"] for e in data["elements"]]
    if len(ids) != len(set(ids)):
        raise ValidationError(message, detail="duplicate element ids")
    for element in data["elements"]:
        if not 0.0 <= element["confidence"] <= 1.0:
            raise ValidationError(message, detail=f"confidence out of range on {element['id']}")
    return data["elements"]


def _apply_modifications(
    base: DesignVersion, modifications: Mapping[str, Mapping[str, Any] | None]
) -> tuple[dict[str, Any], tuple[str, ...]]:
    """Payload of a refinement plus the ids that need re-rendering.

    Elements not named in modifications, and their render references, are
    carried over untouched.
    """
    payload = thaw_payload(base.payload)
    elements: list[dict[str, Any]] = payload.get("elements", [])
    index = {str(e["id"]): e for e in elements}
    removed: set[str] = set()
    changed: list[str] = []

    for eid, change in modifications.items():
        if change is None:
            if eid not in index:
                raise ValidationError(
                    "Cannot remove an element that does not exist.", detail=f"unknown element {eid}"
                )
            removed.add(eid)
        elif eid in index:
            index[eid].update(thaw_payload(change))
            index[eid]["id"] = eid
            changed.append(eid)
        else:
            added = {**thaw_payload(change), "id": eid}
            elements.append(added)
            index[eid] = added
            changed.append(eid)

    payload["elements"] = _validated_elements(
        [e for e in elements if str(e["id"]) not in removed],
        "The modification does not produce a valid element.",
    )
    if "renders" in payload:
        for eid in (*changed, *removed):
            payload["renders"].pop(eid, None)
    # Findings and exports describe the content before the edit
    payload.pop("compliance_report_id", None)
    payload.pop("export", None)
    return payload, tuple(changed)


def _artifact(result: Mapping[str, Any], action: Action) -> str:
    artifact = result.get("artifact")
    if not isinstance(artifact, str) or not artifact:
        raise ValidationError(
            "The service returned no usable artifact.",
            detail=f"{action.value} result without an artifact reference",
        )
    return artifact


def _apply_result(
    pending: _Pending, source: DesignVersion, result: Mapping[str, Any]
) -> dict[str, Any]:
    """Payload of the version a successful job produces from its input version."""
    payload = thaw_payload(source.payload)
    action = pending.action

    if action is Action.ANALYZE:
        payload["elements"] = _validated_elements(
            result.get("elements"), "The sketch analysis returned unusable elements."
        )
        payload.pop("renders", None)
        return payload

    if action in (Action.RENDER, Action.RERENDER):
        renders = result.get("renders")
        if not isinstance(renders, Mapping):
            raise ValidationError(
                "The render service returned no usable images.",
                detail=f"{action.value} result without a renders mapping",
            )
        wanted = (
            pending.context["element_ids"]
            if action is Action.RERENDER
            else tuple(source.element_map())
        )
        missing = [eid for eid in wanted if eid not in renders]
        if missing:
            raise ValidationError(
                "The render service skipped some elements.",
                detail=f"no render for {', '.join(missing)}",
            )
        merged = payload.get("renders", {}) if action is Action.RERENDER else {}
        merged.update({eid: thaw_payload(renders[eid]) for eid in wanted})
        payload["renders"] = merged
        if "artifact" in result:
            payload["render_artifact"] = result["artifact"]
        return payload

    if action is Action.SIMULATE_LIGHTING:
        payload["walkthrough"] = _artifact(result, action)
        return payload

    if action is Action.EXPORT:
        payload["export"] = {
            "format": pending.context["format"],
            "artifact": _artifact(result, action),
            "acknowledged_violations": pending.context["acknowledged"],
        }
        return payload

    raise FatalError(detail=f"no result handling for {action.value}")
