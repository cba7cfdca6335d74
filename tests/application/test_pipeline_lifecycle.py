"""Tests for DesignPipeline failure handling, recovery, ordering and branches."""

import time

import pytest

from archflow.application.config import BreakerConfig
from archflow.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PolicyError,
    TransientError,
    ValidationError,
)
from archflow.domain.models import JobKind, JobStatus, ResolutionStrategy, Stage
from archflow.domain.pipeline_event import PipelineEventType
from archflow.infrastructure.capabilities.mock import MockCapability
from conftest import eventually, render_elements

TIMEOUT = 2.0


def slow_render(job):
    time.sleep(0.3)
    return render_elements(job)


class TestFailureAndRetry:
    def test_render_timeout_keeps_prior_head(self, make_pipeline, fast_config):
        config = fast_config.with_kind(JobKind.RENDER, deadline_seconds=0.1)
        h = make_pipeline(
            {JobKind.RENDER: MockCapability([slow_render, render_elements])}, config=config
        )
        design_id = h.analyzed()
        before = h.pipeline.head(design_id)

        h.pipeline.request_render(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)

        design = h.pipeline.get_design(design_id)
        assert h.pipeline.stage(design_id) is Stage.FAILED
        assert design.failure.code == "timeout"
        assert design.head_version_id == before.version_id
        with pytest.raises(InvalidTransitionError):
            h.pipeline.request_render(design_id)

        h.pipeline.retry(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.pipeline.stage(design_id) is Stage.VISUALIZED
        assert h.pipeline.get_design(design_id).failure is None

    def test_retry_compliance(self, make_pipeline):
        clean = {"score": 1.0, "violations": []}
        compliance = MockCapability(
            [ValidationError("down"), ValidationError("down"), clean, clean]
        )
        h = make_pipeline({JobKind.CHECK_COMPLIANCE: compliance})
        design_id = h.visualized()
        h.pipeline.request_compliance(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)
        assert h.pipeline.stage(design_id) is Stage.FAILED

        job_ids = h.pipeline.retry(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert len(job_ids) == 2
        assert h.pipeline.stage(design_id) is Stage.COMPLIANCE_CHECKED

    def test_retry_replays_the_failed_request(self, make_pipeline, gated):
        def lighting(job):
            if lighting_gate.calls == 1:
                raise ValidationError("unknown time of day")
            return {"artifact": "video://walkthrough"}

        lighting_gate = gated(result=lighting)
        compliance_gate = gated(result={"score": 1.0, "violations": []})
        h = make_pipeline(
            {
                JobKind.SIMULATE_LIGHTING: lighting_gate,
                JobKind.CHECK_COMPLIANCE: compliance_gate,
            }
        )
        design_id = h.visualized()

        h.pipeline.request_lighting(design_id, {"time_of_day": "noon"})
        assert lighting_gate.started.wait(TIMEOUT)
        h.pipeline.request_compliance(design_id)
        lighting_gate.release.set()
        eventually(lambda: h.pipeline.stage(design_id) is Stage.FAILED)
        compliance_gate.release.set()
        h.pipeline.wait_idle(design_id, TIMEOUT)
        assert h.pipeline.head(design_id).stage is Stage.COMPLIANCE_CHECKED
        assert h.pipeline.get_design(design_id).failure.code == "validation"

        job_id = h.pipeline.retry(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.scheduler.status(job_id).kind is JobKind.SIMULATE_LIGHTING
        assert h.scheduler.status(job_id).params["preferences"] == {"time_of_day": "noon"}
        assert lighting_gate.calls == 2
        head = h.pipeline.head(design_id)
        assert head.stage is Stage.COMPLIANCE_CHECKED
        assert head.payload["walkthrough"] == "video://walkthrough"
        assert h.pipeline.get_design(design_id).failure is None

    def test_retry_without_failure(self, make_pipeline):
        h = make_pipeline()
        design_id = h.analyzed()
        with pytest.raises(InvalidTransitionError):
            h.pipeline.retry(design_id)

    def test_failure_is_recorded_as_event(self, make_pipeline):
        h = make_pipeline({JobKind.ANALYZE: MockCapability([RuntimeError("segfault")])})
        design_id = h.create()

        job_id = h.pipeline.request_analysis(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)

        (event,) = h.events.get_events(design_id, PipelineEventType.DESIGN_FAILED)
        assert event.code == "fatal"
        assert event.job_id == job_id
        assert "segfault" not in event.summary


class TestRollback:
    """Rollback restores an ancestor without rewriting history."""

    def test_restores_content_and_stage(self, make_pipeline):
        h = make_pipeline()
        design_id = h.visualized()
        root = h.pipeline.history(design_id)[0]
        head = h.pipeline.head(design_id)

        restored = h.pipeline.rollback(design_id, root.version_id)

        assert restored.content_hash == root.content_hash
        assert restored.stage is Stage.UPLOADED
        assert restored.parent_id == head.version_id
        assert restored.note == f"rollback to {root.version_id}"
        assert h.pipeline.stage(design_id) is Stage.UPLOADED
        assert len(h.pipeline.history(design_id)) == 4
        assert PipelineEventType.ROLLBACK in h.event_types(design_id)

    def test_rollback_twice_is_content_idempotent(self, make_pipeline):
        h = make_pipeline()
        design_id = h.visualized()
        analyzed_version = h.pipeline.history(design_id)[1]

        first = h.pipeline.rollback(design_id, analyzed_version.version_id)
        second = h.pipeline.rollback(design_id, analyzed_version.version_id)

        assert first.content_hash == second.content_hash == analyzed_version.content_hash
        assert first.version_id != second.version_id
        assert h.pipeline.stage(design_id) is Stage.ANALYZED

    def test_clears_failure(self, make_pipeline):
        h = make_pipeline({JobKind.RENDER: MockCapability([{"renders": {}}])})
        design_id = h.analyzed()
        h.pipeline.request_render(design_id)
        h.pipeline.wait_idle(design_id, TIMEOUT)
        assert h.pipeline.stage(design_id) is Stage.FAILED

        h.pipeline.rollback(design_id, h.pipeline.head(design_id).version_id)

        assert h.pipeline.get_design(design_id).failure is None
        assert h.pipeline.stage(design_id) is Stage.ANALYZED

    def test_branch_is_not_an_ancestor(self, make_pipeline):
        h = make_pipeline()
        design_id = h.visualized()
        base = h.pipeline.head(design_id)
        h.pipeline.refine(design_id, {"w1": {"label": "A"}})
        h.pipeline.wait_idle(design_id, TIMEOUT)
        branch = h.pipeline.refine(
            design_id, {"w2": {"label": "B"}}, base_version_id=base.version_id
        )

        with pytest.raises(ValidationError):
            h.pipeline.rollback(design_id, branch.version_id)

    def test_unknown_version(self, make_pipeline):
        h = make_pipeline()
        design_id = h.create()
        with pytest.raises(NotFoundError):
            h.pipeline.rollback(design_id, "missing")


class TestCancel:
    def test_cancel_analysis(self, make_pipeline, gated):
        gate = gated(cancellable=True)
        h = make_pipeline({JobKind.ANALYZE: gate})
        design_id = h.create()
        job_id = h.pipeline.request_analysis(design_id)
        assert gate.started.wait(TIMEOUT)

        assert h.pipeline.cancel(design_id) == 1
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.scheduler.status(job_id).status is JobStatus.CANCELLED
        assert h.pipeline.stage(design_id) is Stage.UPLOADED
        assert len(h.pipeline.history(design_id)) == 1
        (discarded,) = h.events.get_events(design_id, PipelineEventType.JOB_DISCARDED)
        assert discarded.summary == "cancelled"

    def test_cancel_compliance(self, make_pipeline, gated):
        gate = gated(cancellable=True)
        h = make_pipeline({JobKind.CHECK_COMPLIANCE: gate})
        design_id = h.visualized()
        h.pipeline.request_compliance(design_id)
        assert gate.started.wait(TIMEOUT)

        assert h.pipeline.cancel(design_id) == 2
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.pipeline.stage(design_id) is Stage.VISUALIZED
        assert h.pipeline.get_design(design_id).failure is None

    def test_nothing_in_flight(self, make_pipeline):
        h = make_pipeline()
        assert h.pipeline.cancel(h.create()) == 0


class TestOrdering:
    """A completion for a superseded version never moves the head."""

    def test_late_result_is_kept_as_history(self, make_pipeline, gated):
        gate = gated(result={"artifact": "video://late"})
        h = make_pipeline({JobKind.SIMULATE_LIGHTING: gate})
        design_id = h.visualized()
        base = h.pipeline.head(design_id)

        h.pipeline.request_lighting(design_id)
        refined = h.pipeline.refine(design_id, {"w1": {"label": "A"}})
        eventually(lambda: h.pipeline.head(design_id).parent_id == refined.version_id)
        head = h.pipeline.head(design_id)

        gate.release.set()
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.pipeline.head(design_id) == head
        assert "walkthrough" not in head.payload
        (late,) = [v for v in h.pipeline.history(design_id) if "walkthrough" in v.payload]
        assert late.parent_id == base.version_id
        assert late.payload["walkthrough"] == "video://late"
        history_only = [
            e
            for e in h.events.get_events(design_id, PipelineEventType.VERSION_COMMITTED)
            if e.summary == "history only"
        ]
        assert [e.version_id for e in history_only] == [late.version_id]

    def test_late_failure_is_discarded(self, make_pipeline, gated):
        gate = gated(result={"frames": 0})
        h = make_pipeline({JobKind.SIMULATE_LIGHTING: gate})
        design_id = h.visualized()

        h.pipeline.request_lighting(design_id)
        h.pipeline.refine(design_id, {"w3": None})
        gate.release.set()
        h.pipeline.wait_idle(design_id, TIMEOUT)

        assert h.pipeline.get_design(design_id).failure is None
        assert h.pipeline.stage(design_id) is Stage.REFINING


class TestDegradedCapability:
    def test_open_breaker_fails_synchronously(self, make_pipeline, fast_config):
        config = fast_config.with_kind(
            JobKind.ANALYZE,
            breaker=BreakerConfig(
                window_size=4, min_calls=2, error_threshold=0.4, cooldown_seconds=60
            ),
        )
        h = make_pipeline(
            {JobKind.ANALYZE: MockCapability([TransientError()], cycle=True)}, config=config
        )
        first = h.create()
        h.pipeline.request_analysis(first)
        h.pipeline.wait_idle(first, TIMEOUT)
        assert h.pipeline.get_design(first).failure.code == "fatal"

        second = h.create()
        h.pipeline.request_analysis(second)

        design = h.pipeline.get_design(second)
        assert design.failure.code == "capability_unavailable"
        assert design.in_flight_job_ids == []
        assert h.event_types(second)[-2:] == [
            PipelineEventType.JOB_SUBMITTED,
            PipelineEventType.DESIGN_FAILED,
        ]


class TestProgress:
    def test_in_flight_jobs(self, make_pipeline, gated):
        gate = gated(result={"elements": []})
        h = make_pipeline({JobKind.ANALYZE: gate})
        design_id = h.create()
        job_id = h.pipeline.request_analysis(design_id)

        progress = h.pipeline.progress(design_id)

        assert progress.stage is Stage.UPLOADED
        assert [j.job_id for j in progress.jobs] == [job_id]
        assert progress.jobs[0].estimated_completion is not None
        with pytest.raises(TimeoutError):
            h.pipeline.wait_idle(design_id, timeout=0.05)

        gate.release.set()
        h.pipeline.wait_idle(design_id, TIMEOUT)
        assert h.pipeline.progress(design_id).jobs == ()


class TestConflicts:
    """Edits against an older version become branches that must be reconciled."""

    def _branched(self, h):
        design_id = h.visualized()
        base = h.pipeline.head(design_id)
        first = h.pipeline.refine(design_id, {"w1": {"label": "A"}})
        h.pipeline.wait_idle(design_id, TIMEOUT)
        branch = h.pipeline.refine(
            design_id,
            {"w1": {"label": "B"}},
            authored_by="user:bob",
            base_version_id=base.version_id,
        )
        return design_id, base, first, branch

    def test_branch_does_not_move_head(self, make_pipeline):
        h = make_pipeline()
        design_id, base, first, branch = self._branched(h)

        assert branch.parent_id == base.version_id
        assert branch.authored_by == "user:bob"
        assert h.pipeline.head(design_id).version_id not in (branch.version_id, base.version_id)
        assert h.pipeline.stage(design_id) is Stage.VISUALIZED

    def test_detect_and_resolve(self, make_pipeline):
        h = make_pipeline()
        design_id, _, first, branch = self._branched(h)

        (conflict,) = h.pipeline.detect_conflicts(design_id)
        assert (conflict.version_a, conflict.version_b) == (first.version_id, branch.version_id)
        assert conflict.overlapping_element_ids == ("w1",)

        with pytest.raises(ConflictError):
            h.pipeline.resolve_conflict(design_id, first.version_id, branch.version_id)

        resolution = h.pipeline.resolve_conflict(
            design_id, first.version_id, branch.version_id, ResolutionStrategy.KEEP_B
        )

        assert h.pipeline.head(design_id) == resolution
        assert resolution.element_map()["w1"]["label"] == "B"
        assert h.pipeline.stage(design_id) is Stage.REFINING
        assert h.pipeline.detect_conflicts(design_id) == []
        assert PipelineEventType.CONFLICT_RESOLVED in h.event_types(design_id)

    def test_resolve_rejects_versions_of_another_design(self, make_pipeline):
        h = make_pipeline()
        design_id, _, first, branch = self._branched(h)
        other_id = h.create()
        before = {d: len(h.versions.history(d)) for d in (design_id, other_id)}

        with pytest.raises(NotFoundError):
            h.pipeline.resolve_conflict(
                other_id, first.version_id, branch.version_id, ResolutionStrategy.KEEP_B
            )

        assert {d: len(h.versions.history(d)) for d in (design_id, other_id)} == before
        assert h.pipeline.detect_conflicts(design_id) != []

    def test_adopt_requires_a_resolution(self, make_pipeline):
        h = make_pipeline()
        design_id, _, _, branch = self._branched(h)
        with pytest.raises(PolicyError):
            h.pipeline.adopt(design_id, branch.version_id)
