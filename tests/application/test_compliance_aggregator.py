"""Tests for ComplianceAggregator."""

import pytest

from archflow.application.compliance import ComplianceAggregator
from archflow.application.config import ComplianceConfig
from archflow.domain.exceptions import TransientError, ValidationError
from archflow.domain.models import JobKind, Stage
from archflow.infrastructure.capabilities.mock import MockCapability
from conftest import compliance_capability, eventually, make_element


@pytest.fixture
def version(version_store):
    return version_store.commit(
        None,
        {"elements": [make_element("w1"), make_element("d1", type_="door")]},
        "user:alice",
        stage=Stage.VISUALIZED,
        design_id="design-1",
    )


def _critical(code: str, element: str) -> dict:
    return {
        "rule_code": code,
        "severity": "critical",
        "description": f"{code} failed",
        "element_id": element,
        "recommendation": "Fix it",
    }


class TestApplicable:
    """Requested rule-sets are topped up with mandatory ones."""

    def test_mandatory_always_included(self, make_scheduler):
        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: compliance_capability()})
        )
        assert aggregator.applicable([]) == ("fire", "accessibility")
        assert aggregator.applicable(["spatial", "fire"]) == ("fire", "accessibility", "spatial")

    def test_unknown_rule_set(self, make_scheduler):
        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: compliance_capability()})
        )
        with pytest.raises(ValidationError):
            aggregator.applicable(["zoning"])

    def test_configured_order(self, make_scheduler):
        config = ComplianceConfig(
            rule_set_order=("energy", "fire"), mandatory_rule_sets=()
        )
        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: compliance_capability()}), config
        )
        assert aggregator.applicable(["fire", "energy"]) == ("energy", "fire")


class TestEvaluate:
    def test_all_rule_sets_evaluated(self, make_scheduler, version):
        capability = compliance_capability(
            {
                "fire": {"score": 0.4, "violations": [_critical("FIRE-1", "d1")]},
                "energy": {"score": 0.7, "violations": []},
            }
        )
        aggregator = ComplianceAggregator(make_scheduler({JobKind.CHECK_COMPLIANCE: capability}))

        report = aggregator.evaluate(version, ["energy"], timeout=2)

        assert report.version_id == version.version_id
        assert report.rule_sets_evaluated == ("fire", "accessibility", "energy")
        assert report.rule_sets_missing == ()
        assert report.overall_compliant is False
        assert report.score == 0.4
        assert [v.rule_code for v in report.violations] == ["FIRE-1"]
        assert capability.call_count == 3

    def test_jobs_carry_rule_set_and_snapshot(self, make_scheduler, version):
        seen = []

        def answer(job):
            elements = job.params["snapshot"]["elements"]
            seen.append((job.params["rule_set"], job.input_ref, len(elements)))
            return {"score": 1.0, "violations": []}

        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: MockCapability([answer], cycle=True)})
        )
        aggregator.evaluate(version, [], timeout=2)

        assert sorted(seen) == [
            ("accessibility", version.version_id, 2),
            ("fire", version.version_id, 2),
        ]

    def test_failed_rule_set_is_missing(self, make_scheduler, version):
        capability = compliance_capability({"accessibility": ValidationError("no rules")})
        aggregator = ComplianceAggregator(make_scheduler({JobKind.CHECK_COMPLIANCE: capability}))

        report = aggregator.evaluate(version, [], timeout=2)

        assert report.rule_sets_evaluated == ("fire",)
        assert report.rule_sets_missing == ("accessibility",)
        assert report.partial
        assert report.overall_compliant is False

    def test_transient_rule_set_retried(self, make_scheduler, version):
        outcomes = iter([TransientError(), {"score": 0.8, "violations": []}])

        def flaky(job):
            if job.params["rule_set"] == "fire":
                outcome = next(outcomes)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            return {"score": 0.9, "violations": []}

        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: MockCapability([flaky], cycle=True)})
        )

        report = aggregator.evaluate(version, [], timeout=2)

        assert report.overall_compliant is True
        assert report.score == 0.8

    def test_unreadable_result_is_missing(self, make_scheduler, version):
        capability = compliance_capability({"fire": {"violations": []}})
        aggregator = ComplianceAggregator(make_scheduler({JobKind.CHECK_COMPLIANCE: capability}))

        report = aggregator.evaluate(version, [], timeout=2)

        assert report.rule_sets_missing == ("fire",)

    def test_timeout_cancels_pending(self, make_scheduler, gated, version):
        gate = gated(cancellable=True)
        scheduler = make_scheduler({JobKind.CHECK_COMPLIANCE: gate})
        aggregator = ComplianceAggregator(scheduler)

        report = aggregator.evaluate(version, [], timeout=0.05)

        assert report.rule_sets_evaluated == ()
        assert report.rule_sets_missing == ("fire", "accessibility")
        assert report.score == 0.0
        assert report.overall_compliant is False


class TestStart:
    def test_report_delivered_once(self, make_scheduler, version):
        aggregator = ComplianceAggregator(
            make_scheduler({JobKind.CHECK_COMPLIANCE: compliance_capability()})
        )
        reports = []

        job_ids = aggregator.start(version, ["spatial"], reports.append)

        assert len(job_ids) == 3
        eventually(lambda: len(reports) == 1)
        assert reports[0].rule_sets_evaluated == ("fire", "accessibility", "spatial")

