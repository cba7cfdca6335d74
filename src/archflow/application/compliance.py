"""
ComplianceAggregator: evaluates independent rule-sets in parallel and
merges their findings into one ComplianceReport.

Each rule-set becomes one check-compliance job. The event-driven start()
is what the pipeline uses; evaluate() is the blocking wrapper for
synchronous callers.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from archflow.application.config import ComplianceConfig
from archflow.application.scheduler import JobScheduler
from archflow.domain.compliance import merge_outcomes, parse_outcome
from archflow.domain.exceptions import ValidationError
from archflow.domain.models import (
    CompletionEvent,
    ComplianceReport,
    DesignVersion,
    JobKind,
    JobRequest,
    JobStatus,
    RuleSetOutcome,
)
from archflow.domain.versioning import thaw_payload

logger = logging.getLogger(__name__)

ReportCallback = Callable[[ComplianceReport], None]


@dataclass
class _Run:
    """One in-progress evaluation."""

    version_id: str
    rule_sets: tuple[str, ...]
    on_report: ReportCallback
    jobs: dict[str, str] = field(default_factory=dict)  # job_id -> rule-set
    outcomes: dict[str, RuleSetOutcome] = field(default_factory=dict)
    settled: set[str] = field(default_factory=set)  # rule-sets with a terminal job

    @property
    def complete(self) -> bool:
        return len(self.settled) == len(self.rule_sets)


class ComplianceAggregator:
    """Fans rule-set checks out through the scheduler and merges the results."""

    def __init__(self, scheduler: JobScheduler, config: ComplianceConfig | None = None):
        self._scheduler = scheduler
        self._config = config or ComplianceConfig()
        self._lock = threading.RLock()
        self._runs_by_job: dict[str, _Run] = {}
        self._early: dict[str, CompletionEvent] = {}
        self._submitting = 0
        scheduler.subscribe(self._on_completion)

    def applicable(self, rule_sets: Iterable[str]) -> tuple[str, ...]:
        """Requested rule-sets plus mandatory ones, in configured order.

        Raises:
            ValidationError: If an unknown rule-set is requested
        """
        requested = set(rule_sets) | set(self._config.mandatory_rule_sets)
        unknown = requested - set(self._config.rule_set_order)
        if unknown:
            raise ValidationError(
                "Unknown compliance rule-set requested.",
                detail=f"unknown: {', '.join(sorted(unknown))}",
            )
        return tuple(rs for rs in self._config.rule_set_order if rs in requested)

    def start(
        self,
        version: DesignVersion,
        rule_sets: Iterable[str],
        on_report: ReportCallback,
    ) -> tuple[str, ...]:
        """
        Submit one job per applicable rule-set and return their job ids.

        on_report is called exactly once, from whichever thread settles the
        last rule-set.
        """
        run = _Run(
            version_id=version.version_id,
            rule_sets=self.applicable(rule_sets),
            on_report=on_report,
        )
        snapshot = thaw_payload(version.payload)
        job_ids: list[str] = []

        with self._lock:
            self._submitting += 1
            try:
                for rule_set in run.rule_sets:
                    job_id = self._scheduler.submit(
                        JobRequest(
                            kind=JobKind.CHECK_COMPLIANCE,
                            input_ref=version.version_id,
                            params={"rule_set": rule_set, "snapshot": snapshot},
                            design_id=version.design_id,
                        )
                    )
                    run.jobs[job_id] = rule_set
                    self._runs_by_job[job_id] = run
                    job_ids.append(job_id)
            finally:
                self._submitting -= 1
            early = [self._early.pop(j) for j in job_ids if j in self._early]

        logger.info(
            "Compliance evaluation of %s started: %s",
            version.version_id,
            ", ".join(run.rule_sets),
        )
        for event in early:
            self._on_completion(event)
        return tuple(job_ids)

    def evaluate(
        self,
        version: DesignVersion,
        rule_sets: Iterable[str],
        timeout: float | None = None,
    ) -> ComplianceReport:
        """
        Evaluate and block until every rule-set settles or the timeout passes.

        Rule-sets still pending at the timeout are cancelled and reported as
        missing.
        """
        done = threading.Event()
        reports: list[ComplianceReport] = []

        def collect(report: ComplianceReport) -> None:
            reports.append(report)
            done.set()

        job_ids = self.start(version, rule_sets, collect)
        if not done.wait(self._config.timeout if timeout is None else timeout):
            logger.warning(
                "Compliance evaluation of %s timed out; cancelling pending rule-sets",
                version.version_id,
            )
            for job_id in job_ids:
                self._scheduler.cancel(job_id)
            done.wait()
        return reports[0]

    def _on_completion(self, event: CompletionEvent) -> None:
        if event.kind is not JobKind.CHECK_COMPLIANCE:
            return

        with self._lock:
            run = self._runs_by_job.pop(event.job_id, None)
            if run is None:
                if self._submitting:
                    self._early[event.job_id] = event
                return
            rule_set = run.jobs[event.job_id]
            run.settled.add(rule_set)
            if event.status is JobStatus.SUCCEEDED and event.result is not None:
                try:
                    run.outcomes[rule_set] = parse_outcome(rule_set, event.result)
                except ValidationError as e:
                    logger.error("Discarding unreadable %s result: %s", rule_set, e.detail)
            else:
                logger.warning(
                    "Rule-set %s not evaluated for %s: %s",
                    rule_set,
                    run.version_id,
                    event.error.code if event.error else event.status.value,
                )
            if not run.complete:
                return

        report = merge_outcomes(run.version_id, run.rule_sets, run.outcomes)
        logger.info(
            "Compliance report %s for %s: compliant=%s score=%.2f missing=%s",
            report.report_id,
            report.version_id,
            report.overall_compliant,
            report.score,
            ",".join(report.rule_sets_missing) or "-",
        )
        run.on_report(report)
