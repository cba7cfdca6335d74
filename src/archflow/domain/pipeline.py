"""
Pipeline stage transition rules.

uploaded -> analyzed -> visualized -> compliance_checked -> exported, with a
refining self-loop on visualized/compliance_checked and a failed side state
reachable from anywhere. The table below is the single source of truth for
which action may start from which stage and where its success lands.
"""

from dataclasses import dataclass
from enum import Enum

from archflow.domain.exceptions import InvalidTransitionError
from archflow.domain.models import JobKind, Stage


class Action(str, Enum):
    ANALYZE = "analyze"
    RENDER = "render"
    REFINE = "refine"
    RERENDER = "rerender"
    SIMULATE_LIGHTING = "simulate_lighting"
    CHECK_COMPLIANCE = "check_compliance"
    EXPORT = "export"


@dataclass(frozen=True)
class Transition:
    sources: frozenset[Stage]
    target: Stage | None  # None keeps the source stage
    job_kind: JobKind | None


TRANSITIONS: dict[Action, Transition] = {
    Action.ANALYZE: Transition(
        frozenset({Stage.UPLOADED}), Stage.ANALYZED, JobKind.ANALYZE
    ),
    Action.RENDER: Transition(
        frozenset({Stage.ANALYZED}), Stage.VISUALIZED, JobKind.RENDER
    ),
    Action.REFINE: Transition(
        frozenset({Stage.VISUALIZED, Stage.REFINING, Stage.COMPLIANCE_CHECKED}),
        Stage.REFINING,
        None,
    ),
    Action.RERENDER: Transition(
        frozenset({Stage.REFINING}), Stage.VISUALIZED, JobKind.RENDER
    ),
    Action.SIMULATE_LIGHTING: Transition(
        frozenset({Stage.VISUALIZED, Stage.REFINING, Stage.COMPLIANCE_CHECKED}),
        None,
        JobKind.SIMULATE_LIGHTING,
    ),
    Action.CHECK_COMPLIANCE: Transition(
        frozenset({Stage.VISUALIZED, Stage.REFINING}),
        Stage.COMPLIANCE_CHECKED,
        JobKind.CHECK_COMPLIANCE,
    ),
    Action.EXPORT: Transition(
        frozenset({Stage.COMPLIANCE_CHECKED}), Stage.EXPORTED, JobKind.EXPORT
    ),
}


def check_transition(action: Action, stage: Stage) -> Stage:
    """Return the stage the action lands on, or raise if it cannot start here.

    Raises:
        InvalidTransitionError: If the design is failed or the stage is not a source
    """
    if stage is Stage.FAILED:
        raise InvalidTransitionError(
            "The design is in a failed state. Retry or roll back first.",
            detail=f"action={action.value}",
        )
    transition = TRANSITIONS[action]
    if stage not in transition.sources:
        allowed = ", ".join(sorted(s.value for s in transition.sources))
        raise InvalidTransitionError(
            f"Cannot {action.value.replace('_', ' ')} a design at stage '{stage.value}'.",
            detail=f"allowed sources: {allowed}",
        )
    return transition.target or stage


def target_stage(action: Action, source: Stage) -> Stage:
    return TRANSITIONS[action].target or source
