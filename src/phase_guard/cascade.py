# cascade.py
# Three-tier analysis cascade: structural → directional → tactical.
#
# One direction only. Each tier sees the assessments of the tiers above it
# and must agree with them. The first tier that reports no opportunity or
# disagrees stops the cascade; lower tiers are never evaluated and never
# revise a higher tier. A cascade instance runs at most once.

import json
import logging
from collections.abc import Callable, Sequence
from typing import Literal

from pydantic import BaseModel, Field

from phase_guard.context import ExecutionContext
from phase_guard.loop import PhaseLoop
from phase_guard.models import PhaseResult, PhaseStatus, TierAssessment

logger = logging.getLogger(__name__)

TIER_NAMES = ("structural", "directional", "tactical")

TRENDING_REGIMES = frozenset({"TREND", "TREND_UP", "TREND_DOWN", "VOLATILITY_EXPANSION"})
UNTRADABLE_REGIMES = frozenset({"NO_TRADE", "RANGE"})

# Receives the higher tiers' assessments, returns this tier's judgement.
# None means "no opportunity".
TierEvaluator = Callable[[list[TierAssessment]], TierAssessment | None]


class CascadeResult(BaseModel):
    status: Literal["actionable", "no_trade"]
    assessments: list[TierAssessment] = Field(default_factory=list)
    reason: str = ""
    evaluated: list[str] = Field(default_factory=list)

    @property
    def actionable(self) -> bool:
        return self.status == "actionable"

    @property
    def bias(self) -> str:
        if not self.actionable:
            return "NO_TRADE"
        return self.assessments[1].direction or "NO_TRADE"


def check_tier(assessment: TierAssessment | None, higher: Sequence[TierAssessment], position: int) -> str | None:
    """Return why ``assessment`` ends the cascade, or None when it is consistent."""
    name = TIER_NAMES[position]
    if assessment is None:
        return f"{name} tier reported no opportunity"
    if not assessment.tradable:
        return f"{name} tier not tradable: {assessment.reason or 'no reason given'}"
    if assessment.regime in UNTRADABLE_REGIMES:
        return f"{name} tier regime {assessment.regime} is not tradable"

    if position == 1:
        structural = higher[0]
        if assessment.direction in (None, "NEUTRAL"):
            if structural.regime in TRENDING_REGIMES:
                return f"directional tier is NEUTRAL under a {structural.regime} regime"
            return "directional tier has no direction"
        if structural.direction not in (None, "NEUTRAL") and assessment.direction != structural.direction:
            return (
                f"directional tier {assessment.direction} disagrees with structural tier {structural.direction}"
            )

    if position == 2:
        directional = higher[1]
        if assessment.direction not in (None, "NEUTRAL") and assessment.direction != directional.direction:
            return f"tactical tier {assessment.direction} disagrees with directional tier {directional.direction}"
        if not assessment.trigger:
            return "tactical tier has no entry trigger"

    return None


def check_consistency(assessments: Sequence[TierAssessment]) -> str | None:
    """Validate an already assembled set of three tiers top-down."""
    if len(assessments) != len(TIER_NAMES):
        return f"expected {len(TIER_NAMES)} tier assessments, got {len(assessments)}"
    for position, assessment in enumerate(assessments):
        problem = check_tier(assessment, assessments[:position], position)
        if problem:
            return problem
    return None


class TierCascade:
    def __init__(self, evaluators: Sequence[TierEvaluator]) -> None:
        if len(evaluators) != len(TIER_NAMES):
            raise ValueError(f"TierCascade needs exactly {len(TIER_NAMES)} evaluators, got {len(evaluators)}")
        self._evaluators = list(evaluators)
        self._result: CascadeResult | None = None

    @property
    def result(self) -> CascadeResult | None:
        return self._result

    def run(self) -> CascadeResult:
        if self._result is not None:
            # Never re-run within the same phase.
            return self._result

        decided: list[TierAssessment] = []
        evaluated: list[str] = []

        for position, evaluator in enumerate(self._evaluators):
            name = TIER_NAMES[position]
            evaluated.append(name)
            assessment = evaluator(list(decided))
            if assessment is not None:
                assessment = assessment.model_copy(update={"tier": name})

            problem = check_tier(assessment, decided, position)
            if problem:
                logger.info("Cascade stopped at %s: %s", name, problem)
                if assessment is not None:
                    decided.append(assessment)
                self._result = CascadeResult(status="no_trade", assessments=decided, reason=problem, evaluated=evaluated)
                return self._result
            decided.append(assessment)

        self._result = CascadeResult(
            status="actionable", assessments=decided, reason="All tiers aligned", evaluated=evaluated
        )
        return self._result


class PlannerTier:
    """
    Tier evaluator backed by a bounded planner loop.

    The loop's output model must be TierAssessment. Anything other than a
    completed loop counts as no opportunity.
    """

    def __init__(self, loop: PhaseLoop, task: str, context: ExecutionContext) -> None:
        self._loop = loop
        self._task = task
        self._context = context
        self.phase_result: PhaseResult | None = None

    def __call__(self, higher: list[TierAssessment]) -> TierAssessment | None:
        decided = [a.model_dump(mode="json", exclude_none=True) for a in higher]
        task = f"{self._task}\n\nHigher tier assessments (binding):\n{json.dumps(decided, indent=2)}"
        self.phase_result = self._loop.run(task, self._context)
        if self.phase_result.status != PhaseStatus.COMPLETED:
            return None
        output = self.phase_result.final_output
        return output if isinstance(output, TierAssessment) else None
