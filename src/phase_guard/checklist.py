# checklist.py
# Declarative per-phase checklists and the kill switch.
#
# The checklist document is YAML keyed by phase. Each entry names a check; a
# handful of ids map to semantic predicates, every other id is a presence
# check against the facts dict the orchestrator assembles. Kill conditions
# are evaluated against the session on every loop iteration and at every
# phase boundary, with no debounce.

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from phase_guard.context import dig
from phase_guard.models import Outcome
from phase_guard.risk import MAX_LOTS_PER_TRADE
from phase_guard.session import (
    DUPLICATE_EXECUTION,
    INVALID_STATE_TRANSITION,
    UNEXPECTED_PLANNER_OUTPUT,
    TradingSession,
)

logger = logging.getLogger(__name__)

DEFAULT_CHECKLIST_PATH = Path(__file__).with_name("checklist.yaml")

RejectionAction = Literal["HALT_SYSTEM", "NO_TRADE", "REJECT", "STOP_AND_ALERT"]
Stage = Literal["pre", "post"]

# Actions that end the whole process rather than the current trade.
HALTING_ACTIONS = frozenset({"HALT_SYSTEM", "STOP_AND_ALERT"})


class ConfigError(Exception):
    """Raised when the checklist document is missing or malformed."""


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


class CheckItem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(..., min_length=1)
    description: str = ""
    required: bool = True
    rejection_action: RejectionAction = "REJECT"
    stage: Stage = "post"
    allowed_values: list[Any] | None = None


class ChecklistDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    global_precheck: list[CheckItem] = Field(default_factory=list)
    market_analysis: list[CheckItem] = Field(default_factory=list)
    plan_validation: list[CheckItem] = Field(default_factory=list)
    order_execution: list[CheckItem] = Field(default_factory=list)
    position_track: list[CheckItem] = Field(default_factory=list)
    kill_conditions: list[str] = Field(default_factory=list)

    def section(self, phase: str) -> list[CheckItem]:
        return getattr(self, phase, None) or []


class CheckFailure(BaseModel):
    id: str
    description: str
    action: RejectionAction
    detail: str = ""


class ChecklistReport(BaseModel):
    phase: str
    passed: bool
    failures: list[CheckFailure] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    action: RejectionAction | None = None

    @property
    def halts(self) -> bool:
        return self.action in HALTING_ACTIONS

    @property
    def reason(self) -> str:
        return "; ".join(f"{f.id}: {f.detail or f.description}" for f in self.failures)


# ---------------------------------------------------------------------------
# Semantic predicates
# ---------------------------------------------------------------------------
# Each takes the facts dict and the entry, and returns None on pass or a
# short failure detail.

Predicate = Callable[[dict[str, Any], CheckItem], str | None]


def _market_open(facts, item):
    return None if facts.get("market_open") is True else "market is closed"


def _feed_connected(facts, item):
    return None if facts.get("feed_connected") is True else "feed is disconnected"


def _broker_authenticated(facts, item):
    return None if facts.get("broker_authenticated") is True else "broker session is not authenticated"


def _not_in_cooldown(facts, item):
    return "cooldown active" if facts.get("in_cooldown") else None


def _no_duplicate_position(facts, item):
    if facts.get("position_open") is True:
        return "session already holds an open position"
    security_id = dig(facts, "executable_plan.security_id")
    positions = facts.get("open_positions") or []
    if security_id is None or not isinstance(positions, list):
        return None
    for position in positions:
        if str(dig(position, "security_id")) == str(security_id):
            return f"position already open on {security_id}"
    return None


def _regime_tradable(facts, item):
    tier = dig(facts, "trade_plan.tiers[0]")
    if tier is None:
        return "no structural tier assessment"
    if dig(tier, "tradable") is False or dig(tier, "regime") == "NO_TRADE":
        return f"regime {dig(tier, 'regime')} is not tradable"
    return None


def _direction_decided(facts, item):
    bias = dig(facts, "trade_plan.bias")
    return None if bias in ("BULLISH", "BEARISH") else f"bias is {bias}"


def _alignment_with_higher_tier(facts, item):
    bias = dig(facts, "trade_plan.bias")
    tiers = dig(facts, "trade_plan.tiers") or ()
    for tier in list(tiers)[1:]:
        direction = dig(tier, "direction")
        if direction not in (None, "NEUTRAL", bias):
            return f"tier {dig(tier, 'tier')} direction {direction} disagrees with bias {bias}"
    return None


def _stop_loss_numeric(facts, item):
    stop = dig(facts, "executable_plan.stop_loss")
    entry = dig(facts, "executable_plan.entry_price")
    if not isinstance(stop, (int, float)) or not isinstance(entry, (int, float)):
        return "stop loss is not numeric"
    if not 0 < stop < entry:
        return f"stop loss {stop} is not between 0 and entry {entry}"
    return None


def _lots_within_cap(facts, item):
    lots = dig(facts, "executable_plan.lots")
    cap = (item.model_extra or {}).get("max_lots", MAX_LOTS_PER_TRADE)
    if not isinstance(lots, int) or not 1 <= lots <= cap:
        return f"lots {lots!r} outside 1..{cap}"
    return None


def _quantity_matches_lots(facts, item):
    plan = facts.get("executable_plan")
    quantity, lots, lot_size = dig(plan, "quantity"), dig(plan, "lots"), dig(plan, "lot_size")
    if None in (quantity, lots, lot_size) or quantity != lots * lot_size:
        return f"quantity {quantity!r} != lots {lots!r} x lot size {lot_size!r}"
    return None


PREDICATES: dict[str, Predicate] = {
    "market_open": _market_open,
    "feed_connected": _feed_connected,
    "broker_authenticated": _broker_authenticated,
    "not_in_cooldown": _not_in_cooldown,
    "no_duplicate_position": _no_duplicate_position,
    "regime_tradable": _regime_tradable,
    "direction_decided": _direction_decided,
    "alignment_with_higher_tier": _alignment_with_higher_tier,
    "stop_loss_numeric": _stop_loss_numeric,
    "lots_within_cap": _lots_within_cap,
    "quantity_matches_lots": _quantity_matches_lots,
}


def _presence(facts: dict[str, Any], item: CheckItem) -> str | None:
    value = dig(facts, item.id)
    if value is None:
        return "missing"
    if item.allowed_values is not None and value not in item.allowed_values:
        return f"{value!r} not in {item.allowed_values}"
    return None


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


def load_checklist(path: str | os.PathLike) -> ChecklistDocument:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read checklist {path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Checklist {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Checklist {path} must be a mapping keyed by phase")
    try:
        document = ChecklistDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Checklist {path} is invalid: {exc}") from exc

    unknown = [name for name in document.kill_conditions if name not in KILL_CONDITIONS]
    if unknown:
        raise ConfigError(f"Unknown kill conditions: {', '.join(unknown)}")
    return document


class ChecklistGuard:
    """Runs the configured checks for a phase. Hot-reloads on file change."""

    def __init__(self, path: str | os.PathLike | None = None) -> None:
        self.path = Path(path) if path else DEFAULT_CHECKLIST_PATH
        self.document = load_checklist(self.path)
        self._mtime = self.path.stat().st_mtime

    def reload_if_changed(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except OSError as exc:
            logger.warning("Checklist %s unavailable, keeping previous version: %s", self.path, exc)
            return False
        if mtime == self._mtime:
            return False
        self.document = load_checklist(self.path)
        self._mtime = mtime
        logger.info("Reloaded checklist from %s", self.path)
        return True

    def run(self, phase: str, facts: dict[str, Any], stage: Stage | None = None) -> ChecklistReport:
        """
        Evaluate one section. ``stage`` filters to pre- or post-phase checks;
        the global section ignores it.
        """
        failures: list[CheckFailure] = []
        warnings: list[str] = []

        for item in self.document.section(phase):
            if stage is not None and phase != "global_precheck" and item.stage != stage:
                continue
            detail = PREDICATES.get(item.id, _presence)(facts, item)
            if detail is None:
                continue
            if item.required:
                failures.append(
                    CheckFailure(id=item.id, description=item.description, action=item.rejection_action, detail=detail)
                )
            else:
                warnings.append(f"{item.id}: {detail}")

        report = ChecklistReport(
            phase=phase,
            passed=not failures,
            failures=failures,
            warnings=warnings,
            action=failures[0].action if failures else None,
        )
        if failures:
            logger.info("Checklist %s failed: %s", phase, report.reason)
        return report

    def kill_switch(self) -> "KillSwitch":
        return KillSwitch(self.document.kill_conditions)


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------


def _max_daily_loss_breached(session: TradingSession) -> bool:
    return session.daily_loss is not None and session.daily_loss.breached


def _feed_disconnected_with_position(session: TradingSession) -> bool:
    return session.position_open and not session.feed_connected


KILL_CONDITIONS: dict[str, Callable[[TradingSession], bool]] = {
    "max_daily_loss_breached": _max_daily_loss_breached,
    "feed_disconnected_with_position": _feed_disconnected_with_position,
    "duplicate_execution_detected": lambda s: s.flag(DUPLICATE_EXECUTION),
    "invalid_state_transition": lambda s: s.flag(INVALID_STATE_TRANSITION),
    "unexpected_planner_output": lambda s: s.flag(UNEXPECTED_PLANNER_OUTPUT),
}

_FLAG_FOR = {
    "duplicate_execution_detected": DUPLICATE_EXECUTION,
    "invalid_state_transition": INVALID_STATE_TRANSITION,
    "unexpected_planner_output": UNEXPECTED_PLANNER_OUTPUT,
}


class KillSwitch:
    """Hard, run-fatal predicates over the session."""

    def __init__(self, conditions: list[str] | None = None) -> None:
        names = list(KILL_CONDITIONS) if conditions is None else list(conditions)
        unknown = [name for name in names if name not in KILL_CONDITIONS]
        if unknown:
            raise ConfigError(f"Unknown kill conditions: {', '.join(unknown)}")
        self.conditions = names

    def evaluate(self, session: TradingSession) -> Outcome:
        triggered = [name for name in self.conditions if KILL_CONDITIONS[name](session)]
        if not triggered:
            return Outcome.success()

        parts = []
        for name in triggered:
            reason = session.reason(_FLAG_FOR[name]) if name in _FLAG_FOR else None
            parts.append(f"{name} ({reason})" if reason else name)
        error = "Kill switch: " + "; ".join(parts)
        logger.critical(error)
        return Outcome.failure(error, fatal=True, triggered=triggered)
