# state_machine.py
# The authoritative phase graph and per-phase capability table.
#
# Transitions outside the graph never raise. They return a fatal Outcome and
# leave the machine untouched; the orchestrator turns that into a kill flag.

import logging
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from phase_guard.models import Outcome, utcnow

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "IDLE"
    MARKET_ANALYSIS = "MARKET_ANALYSIS"
    PLAN_VALIDATION = "PLAN_VALIDATION"
    ORDER_EXECUTION = "ORDER_EXECUTION"
    POSITION_TRACK = "POSITION_TRACK"
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"

    @property
    def key(self) -> str:
        """Lower-case name used for checklist sections and result keys."""
        return self.value.lower()


TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.REJECTED})

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset({Phase.MARKET_ANALYSIS}),
    # COMPLETE straight from analysis is the no-trade exit.
    Phase.MARKET_ANALYSIS: frozenset({Phase.PLAN_VALIDATION, Phase.REJECTED, Phase.COMPLETE}),
    Phase.PLAN_VALIDATION: frozenset({Phase.ORDER_EXECUTION, Phase.REJECTED}),
    Phase.ORDER_EXECUTION: frozenset({Phase.POSITION_TRACK, Phase.REJECTED}),
    Phase.POSITION_TRACK: frozenset({Phase.COMPLETE}),
    Phase.COMPLETE: frozenset({Phase.IDLE}),
    Phase.REJECTED: frozenset({Phase.IDLE}),
}


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class PhaseCapability(BaseModel):
    """What the planner may do in one phase."""

    model_config = ConfigDict(frozen=True)

    planner_allowed: bool
    max_iterations: int = Field(0, ge=0)
    timeout: float = Field(0.0, ge=0)
    allowed_tools: tuple[str, ...] = ()
    output: str | None = None


DEFAULT_CAPABILITIES: dict[Phase, PhaseCapability] = {
    Phase.MARKET_ANALYSIS: PhaseCapability(
        planner_allowed=True,
        max_iterations=8,
        timeout=60.0,
        allowed_tools=(
            "broker.instrument.find",
            "broker.market.ltp",
            "broker.history.intraday",
            "broker.option.expiries",
            "broker.option.chain",
        ),
        output="trade_plan",
    ),
    Phase.PLAN_VALIDATION: PhaseCapability(
        planner_allowed=True,
        max_iterations=3,
        timeout=10.0,
        allowed_tools=("broker.funds.balance", "broker.positions.list", "broker.market.ltp"),
        output="executable_plan",
    ),
    Phase.ORDER_EXECUTION: PhaseCapability(
        planner_allowed=True,
        max_iterations=2,
        timeout=15.0,
        allowed_tools=("broker.order.place", "broker.super.place"),
        output="order_id",
    ),
    Phase.POSITION_TRACK: PhaseCapability(planner_allowed=False),
}

_NO_CAPABILITY = PhaseCapability(planner_allowed=False)


class Transition(BaseModel):
    from_phase: Phase
    to_phase: Phase
    at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class StateMachine:
    def __init__(self, capabilities: dict[Phase, PhaseCapability] | None = None) -> None:
        self._capabilities = dict(DEFAULT_CAPABILITIES)
        if capabilities:
            self._capabilities.update(capabilities)
        self._state = Phase.IDLE
        self._history: list[Transition] = []

    @property
    def state(self) -> Phase:
        return self._state

    @property
    def history(self) -> list[Transition]:
        return list(self._history)

    @property
    def terminal(self) -> bool:
        return self._state in TERMINAL_PHASES

    def can_transition(self, to: Phase) -> bool:
        return to in TRANSITIONS.get(self._state, frozenset())

    def transition(self, to: Phase) -> Outcome:
        if not self.can_transition(to):
            allowed = ", ".join(sorted(p.value for p in TRANSITIONS.get(self._state, ()))) or "none"
            error = f"Invalid transition: {self._state.value} -> {to.value} (allowed: {allowed})"
            logger.error(error)
            return Outcome.failure(error, fatal=True, from_phase=self._state.value, to_phase=to.value)

        record = Transition(from_phase=self._state, to_phase=to)
        self._history.append(record)
        self._state = to
        logger.info("Phase %s -> %s", record.from_phase.value, to.value)
        return Outcome.success(from_phase=record.from_phase.value, to_phase=to.value)

    def capability(self, phase: Phase | None = None) -> PhaseCapability:
        return self._capabilities.get(phase or self._state, _NO_CAPABILITY)

    def planner_allowed(self, phase: Phase | None = None) -> bool:
        return self.capability(phase).planner_allowed

    def reset(self) -> Outcome:
        """Return to IDLE from a terminal phase."""
        if self._state == Phase.IDLE:
            return Outcome.success(from_phase=Phase.IDLE.value, to_phase=Phase.IDLE.value)
        return self.transition(Phase.IDLE)
