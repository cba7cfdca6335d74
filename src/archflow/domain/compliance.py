"""
Compliance merge policy.

Pure functions turning per-rule-set outcomes into one report:
- violations are unioned (exact duplicates collapsed, conflicting
  recommendations for the same element all kept);
- any critical violation or any unevaluated rule-set makes the design
  non-compliant;
- the aggregate score is the minimum of the evaluated rule-set scores.
"""

import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from archflow.domain.exceptions import ValidationError
from archflow.domain.models import (
    ComplianceReport,
    RuleSetOutcome,
    Severity,
    Violation,
)


def parse_outcome(rule_set: str, result: Mapping[str, Any]) -> RuleSetOutcome:
    """Build a RuleSetOutcome from a compliance capability result.

    Raises:
        ValidationError: If the result is malformed
    """
    try:
        score = float(result["score"])
        violations = tuple(
            Violation(
                rule_code=str(v["rule_code"]),
                severity=Severity(v["severity"]),
                description=str(v.get("description", "")),
                element_id=v.get("element_id"),
                recommendation=str(v.get("recommendation", "")),
                auto_fixable=bool(v.get("auto_fixable", False)),
                rule_set=rule_set,
            )
            for v in result.get("violations", ())
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(
            "The compliance result could not be read.",
            detail=f"{rule_set}: {type(e).__name__}: {e}",
        ) from e
    if not 0.0 <= score <= 1.0:
        raise ValidationError(
            "The compliance result could not be read.",
            detail=f"{rule_set}: score {score} outside [0, 1]",
        )
    return RuleSetOutcome(rule_set=rule_set, violations=violations, score=score)


def merge_outcomes(
    version_id: str,
    rule_sets: Sequence[str],
    outcomes: Mapping[str, RuleSetOutcome],
) -> ComplianceReport:
    """Merge per-rule-set outcomes into one report.

    Args:
        version_id: Version the rule-sets were evaluated against
        rule_sets: Every rule-set that should have been evaluated, in order
        outcomes: Outcomes of the rule-sets that were actually evaluated
    """
    order = {rs: i for i, rs in enumerate(rule_sets)}
    evaluated = tuple(rs for rs in rule_sets if rs in outcomes)
    missing = tuple(rs for rs in rule_sets if rs not in outcomes)

    seen: set[tuple[Any, ...]] = set()
    violations: list[Violation] = []
    for rs in evaluated:
        for v in outcomes[rs].violations:
            key = (v.rule_set, v.rule_code, v.element_id, v.severity, v.recommendation)
            if key in seen:
                continue
            seen.add(key)
            violations.append(v)

    violations.sort(
        key=lambda v: (
            -v.severity.rank,
            order.get(v.rule_set, len(order)),
            v.rule_code,
            v.element_id or "",
        )
    )

    has_critical = any(v.severity is Severity.CRITICAL for v in violations)
    score = min((outcomes[rs].score for rs in evaluated), default=0.0)

    return ComplianceReport(
        report_id=str(uuid.uuid4()),
        version_id=version_id,
        violations=tuple(violations),
        overall_compliant=bool(evaluated) and not missing and not has_critical,
        score=score,
        rule_sets_evaluated=evaluated,
        rule_sets_missing=missing,
        created_at=datetime.now(UTC).isoformat(),
    )
