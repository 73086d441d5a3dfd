# orchestrator.py
# Phase orchestrator.
#
# The orchestrator is the only component that moves the state machine and
# the only one that builds an ExecutablePlan. Each planner phase runs in a
# bounded loop over a scoped registry view; a phase that does not end in its
# success status short-circuits the run.
#
# Control flow:
#   kill switch → MARKET_ANALYSIS (checklist → cascade → loop → TradePlan)
#   → PLAN_VALIDATION (checklist → loop → risk converter → ExecutablePlan)
#   → ORDER_EXECUTION (checklist → loop with order slot → receipt)
#   → POSITION_TRACK (tracker thread) → COMPLETE
#
# All terminal output is delegated to display.py.

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import date
from typing import Any

from pydantic import ValidationError

from phase_guard import display
from phase_guard.cascade import CascadeResult, PlannerTier, TierCascade, TierEvaluator, check_consistency
from phase_guard.checklist import ChecklistGuard, ChecklistReport
from phase_guard.config import Settings
from phase_guard.context import ExecutionContext
from phase_guard.dependencies import DependencyEnforcer
from phase_guard.loop import PhaseLoop
from phase_guard.models import (
    CandidateSelection,
    ExecutablePlan,
    Outcome,
    PhaseResult,
    PhaseStatus,
    RunResult,
    TierAssessment,
    ToolDescriptor,
    ToolResult,
    TradePlan,
)
from phase_guard.planner import OpenAIPlanner, Planner
from phase_guard.risk import RiskConverter, instrument_spec, verify_order_args
from phase_guard.safety import SafetyGate, trading_rules
from phase_guard.session import (
    INVALID_STATE_TRANSITION,
    POSITION_OPEN,
    UNEXPECTED_PLANNER_OUTPUT,
    DailyLossTracker,
    TradingSession,
)
from phase_guard.state_machine import DEFAULT_CAPABILITIES, Phase, PhaseCapability, StateMachine
from phase_guard.tools import ToolRegistry
from phase_guard.tracker import ExitEvent, PositionTracker, Tick
from phase_guard.trading_calendar import TradingCalendar

logger = logging.getLogger(__name__)

FeedFactory = Callable[[ExecutablePlan], Iterable[Tick]]
StatusProvider = Callable[[], dict[str, Any]]


# ---------------------------------------------------------------------------
# Phase tasks
# ---------------------------------------------------------------------------

ANALYSIS_TASK = """\
{task}

Phase: MARKET_ANALYSIS. Gather market data with the tools provided and \
answer with a final TradePlan: bias, exactly three tier assessments \
(structural, directional, tactical), up to three option candidates with \
last_price, and qualitative stop_loss_logic / take_profit_logic. Do not put \
numeric quantities in the plan.\
"""

VALIDATION_TASK = """\
Phase: PLAN_VALIDATION. Fetch available funds and open positions, then \
answer with a final candidate selection naming one security_id from the \
trade plan. Optionally report swing_low and previous_day_high. The \
controller computes every risk number.\
"""

EXECUTION_TASK = """\
Phase: ORDER_EXECUTION. Place exactly one order for the executable plan. \
Security, quantity, prices and direction are filled in by the controller; \
supply exchange_segment, product_type and order_type. Answer final once \
the order is acknowledged.\
"""

TIER_TASK = """\
{task}

Tier: {tier}. Answer with a final TierAssessment for this tier only.\
"""


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PhaseOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        planner: Planner,
        risk: RiskConverter,
        session: TradingSession,
        checklist: ChecklistGuard,
        safety: SafetyGate | None = None,
        state_machine: StateMachine | None = None,
        calendar: TradingCalendar | None = None,
        tier_evaluators: Sequence[TierEvaluator] | None = None,
        tier_tasks: Sequence[str] | None = None,
        tier_max_iterations: int = 3,
        feed_factory: FeedFactory | None = None,
        status_provider: StatusProvider | None = None,
        date_mode: str = "LIVE",
        interval: str = "5",
        max_parallel_tools: int = 4,
        stale_after: float = 30.0,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.planner = planner
        self.risk = risk
        self.session = session
        self.checklist = checklist
        self.safety = safety or SafetyGate(trading_rules())
        self.state_machine = state_machine or StateMachine()
        self.calendar = calendar or TradingCalendar()
        self.tier_evaluators = list(tier_evaluators) if tier_evaluators else None
        self.tier_tasks = list(tier_tasks) if tier_tasks else None
        self.tier_max_iterations = tier_max_iterations
        self.feed_factory = feed_factory
        self.status_provider = status_provider
        self.date_mode = date_mode.upper()
        self.interval = interval
        self.max_parallel_tools = max_parallel_tools
        self.stale_after = stale_after
        self._today = today
        self._clock = clock
        self.tracker: PositionTracker | None = None

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def kill_check(self) -> Outcome:
        return self.checklist.kill_switch().evaluate(self.session)

    def _transition(self, to: Phase) -> Outcome:
        outcome = self.state_machine.transition(to)
        if not outcome.ok:
            self.session.set_flag(INVALID_STATE_TRANSITION, reason=outcome.error)
        return outcome

    def _flag_unexpected_output(self, reason: str) -> None:
        self.session.set_flag(UNEXPECTED_PLANNER_OUTPUT, reason=reason)

    def _facts(self, context: ExecutionContext) -> dict[str, Any]:
        facts: dict[str, Any] = dict(context.outputs)
        if self.status_provider is not None:
            facts.update(self.status_provider())
        else:
            facts.setdefault("market_open", self.calendar.is_trading_day(self._today()))
            facts.setdefault("broker_authenticated", True)
        facts["feed_connected"] = self.session.feed_connected
        facts["position_open"] = self.session.position_open
        if self.session.daily_loss is not None:
            facts.setdefault("in_cooldown", not self.session.daily_loss.can_trade())
        return facts

    def _checks(self, phase: Phase, context: ExecutionContext, stage: str) -> ChecklistReport:
        facts = self._facts(context)
        if stage == "pre":
            report = self.checklist.run("global_precheck", facts)
            if not report.passed:
                return report
        return self.checklist.run(phase.key, facts, stage=stage)

    # ------------------------------------------------------------------
    # Loop construction
    # ------------------------------------------------------------------

    def _loop(self, phase: Phase, capability: PhaseCapability, output_model=None, **hooks) -> PhaseLoop:
        view = self.registry.view(capability.allowed_tools)
        return PhaseLoop(
            phase.key,
            self.planner,
            view,
            DependencyEnforcer(view, self.calendar, self._today),
            self.safety,
            max_iterations=capability.max_iterations,
            timeout=capability.timeout,
            output_model=output_model,
            kill_check=self.kill_check,
            on_unexpected_output=self._flag_unexpected_output,
            max_parallel_tools=self.max_parallel_tools,
            clock=self._clock,
            **hooks,
        )

    def _analysis_context(self, overrides: dict[str, Any] | None) -> dict[str, Any]:
        analysis: dict[str, Any] = {"date_mode": self.date_mode, "interval": self.interval}
        if self.date_mode == "LIVE":
            dates = self.calendar.resolve_live_dates(self._today())
            analysis.update(from_date=dates["from_date"], to_date=dates["to_date"])
        analysis.update(overrides or {})
        return analysis

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _halt(self, result: RunResult, reason: str) -> RunResult:
        result.halted = True
        result.halt_reason = reason
        result.final_status = "halted"
        if self.state_machine.can_transition(Phase.REJECTED):
            self.state_machine.transition(Phase.REJECTED)
        display.halt(reason)
        display.run_summary(result)
        return result

    def _finish(self, result: RunResult, status: str, final_output: Any = None, to: Phase = Phase.REJECTED) -> RunResult:
        result.final_status = status
        result.final_output = final_output
        if self.state_machine.state != to:
            outcome = self._transition(to)
            if not outcome.ok:
                return self._halt(result, outcome.error)
        display.run_summary(result)
        return result

    def _fail_checklist(self, result: RunResult, report: ChecklistReport, failed_status: str) -> RunResult:
        display.checklist_failed(report.phase, report.reason, report.action)
        if report.halts:
            return self._halt(result, f"Checklist {report.phase}: {report.reason}")
        if report.action == "NO_TRADE":
            to = Phase.COMPLETE if self.state_machine.can_transition(Phase.COMPLETE) else Phase.REJECTED
            return self._finish(result, "no_trade", {"reason": report.reason}, to=to)
        return self._finish(result, failed_status, {"reason": report.reason})

    @staticmethod
    def _rejected(phase: Phase, reason: str, base: PhaseResult | None = None) -> PhaseResult:
        if base is not None:
            return base.model_copy(update={"status": PhaseStatus.REJECTED, "reason": reason})
        return PhaseResult(phase=phase.key, status=PhaseStatus.REJECTED, reason=reason)

    def _record(self, result: RunResult, phase_result: PhaseResult) -> None:
        result.phases[phase_result.phase] = phase_result
        for entry in phase_result.trace:
            if entry.result is not None:
                display.tool_result(entry.result)
        display.phase_end(phase_result)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_cascade(self, task: str, context: ExecutionContext, result: RunResult) -> CascadeResult | None:
        if self.tier_evaluators is not None:
            evaluators: list[TierEvaluator] = list(self.tier_evaluators)
        elif self.tier_tasks is not None:
            capability = self.state_machine.capability(Phase.MARKET_ANALYSIS).model_copy(
                update={"max_iterations": self.tier_max_iterations}
            )
            evaluators = [
                PlannerTier(
                    self._loop(Phase.MARKET_ANALYSIS, capability, output_model=TierAssessment),
                    TIER_TASK.format(task=task, tier=tier_task),
                    context,
                )
                for tier_task in self.tier_tasks
            ]
        else:
            return None

        cascade = TierCascade(evaluators).run()
        for evaluator, name in zip(evaluators, cascade.evaluated):
            tier_result = getattr(evaluator, "phase_result", None)
            if isinstance(tier_result, PhaseResult):
                result.phases[f"{Phase.MARKET_ANALYSIS.key}.{name}"] = tier_result
        context.put("tier_assessments", [a.model_dump(mode="json") for a in cascade.assessments])
        return cascade

    def _analyse(self, task: str, context: ExecutionContext, result: RunResult) -> tuple[PhaseResult, TradePlan | None, str]:
        """Returns the phase result, the plan, and the failed status to use when the plan is None."""
        phase = Phase.MARKET_ANALYSIS
        capability = self.state_machine.capability(phase)

        cascade = self._run_cascade(task, context, result)
        if cascade is not None and not cascade.actionable:
            return self._rejected(phase, f"No trade: {cascade.reason}"), None, "no_trade"

        loop = self._loop(phase, capability, output_model=TradePlan)
        phase_result = loop.run(ANALYSIS_TASK.format(task=task), context)
        if phase_result.status != PhaseStatus.COMPLETED:
            return phase_result, None, "analysis_failed"

        plan = phase_result.final_output
        if not isinstance(plan, TradePlan):
            try:
                plan = TradePlan.model_validate(context.lookup(capability.output or "trade_plan"))
            except ValidationError:
                return self._rejected(phase, "No trade plan produced", phase_result), None, "analysis_failed"

        if cascade is not None:
            # Higher tiers are binding: the planner cannot revise them.
            if plan.bias != cascade.bias:
                reason = f"No trade: plan bias {plan.bias} disagrees with cascade bias {cascade.bias}"
                return self._rejected(phase, reason, phase_result), None, "no_trade"
            plan = plan.model_copy(update={"tiers": tuple(cascade.assessments)})
        else:
            problem = check_consistency(plan.tiers)
            if problem:
                return self._rejected(phase, f"No trade: {problem}", phase_result), None, "no_trade"

        if plan.bias == "NO_TRADE":
            return self._rejected(phase, "No trade: planner bias is NO_TRADE", phase_result), None, "no_trade"

        context.put("trade_plan", plan)
        return phase_result, plan, ""

    def _validate(
        self, plan: TradePlan, context: ExecutionContext
    ) -> tuple[PhaseResult, ExecutablePlan | None]:
        phase = Phase.PLAN_VALIDATION
        loop = self._loop(phase, self.state_machine.capability(phase), output_model=CandidateSelection)
        phase_result = loop.run(VALIDATION_TASK, context)
        if phase_result.status != PhaseStatus.COMPLETED:
            return phase_result, None

        candidates = {c.security_id: c for c in plan.candidates}
        if not candidates:
            return self._rejected(phase, "Trade plan has no candidates", phase_result), None

        selection = phase_result.final_output
        security_id = selection.security_id if isinstance(selection, CandidateSelection) else plan.candidates[0].security_id
        candidate = candidates.get(security_id)
        if candidate is None:
            return self._rejected(phase, f"Candidate {security_id} is not in the trade plan", phase_result), None
        if candidate.last_price is None:
            return self._rejected(phase, f"No entry price for candidate {security_id}", phase_result), None

        funds = context.lookup("available_capital")
        if not isinstance(funds, (int, float)) or isinstance(funds, bool):
            return self._rejected(phase, "Available capital unknown: fetch funds before validation", phase_result), None

        levels = {}
        if isinstance(selection, CandidateSelection):
            levels = {"swing_low": selection.swing_low, "previous_day_high": selection.previous_day_high}
        decision, executable = self.risk.build_executable_plan(plan, candidate, candidate.last_price, funds, **levels)
        context.put("risk_decision", decision.model_dump(mode="json"))
        if executable is None:
            return self._rejected(phase, decision.reason, phase_result), None

        context.put("executable_plan", executable)
        context.pass_guard("RiskGuard")
        return phase_result.model_copy(update={"status": PhaseStatus.APPROVED, "reason": decision.reason}), executable

    def _execute(self, trade_id: str, plan: ExecutablePlan, context: ExecutionContext) -> PhaseResult:
        phase = Phase.ORDER_EXECUTION

        def admission(name: str, args: dict[str, Any], ctx: ExecutionContext, descriptor: ToolDescriptor | None) -> list[str]:
            if descriptor is None or not descriptor.places_orders:
                return []
            return verify_order_args(plan, args)

        def order_dispatch(name: str, args: dict[str, Any], call: Callable[[], ToolResult]) -> ToolResult:
            with self.session.order_slot(trade_id) as acquired:
                if not acquired:
                    return ToolResult(status="rejected", tool=name, args=args, error="Duplicate execution: order in flight")
                if not self.session.register_order(trade_id, name, args):
                    return ToolResult(status="rejected", tool=name, args=args, error="Duplicate execution: order repeated")
                outcome = call()
            if outcome.ok:
                context.record_event("position_opened")
                self.session.set_flag(POSITION_OPEN, True)
            else:
                context.record_event("order_failed")
            return outcome

        loop = self._loop(
            phase, self.state_machine.capability(phase), admission=admission, order_dispatch=order_dispatch
        )
        return loop.run(EXECUTION_TASK, context)

    def _track(self, plan: ExecutablePlan) -> PhaseResult:
        if self.feed_factory is None:
            return PhaseResult(phase=Phase.POSITION_TRACK.key, status=PhaseStatus.COMPLETED, reason="No feed configured")
        self.tracker = PositionTracker(plan, self.feed_factory(plan), self.session, stale_after=self.stale_after)
        self.tracker.start()
        return PhaseResult(phase=Phase.POSITION_TRACK.key, status=PhaseStatus.COMPLETED, reason="Position tracker started")

    def poll_exit_events(self) -> list[ExitEvent]:
        return self.tracker.poll_exit_events() if self.tracker is not None else []

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, task: str, analysis_context: dict[str, Any] | None = None) -> RunResult:
        """
        Full pipeline entry point.

        Always returns a RunResult; every terminal status carries a reason
        and the per-phase traces.
        """
        result = RunResult()
        display.run_start(task)
        self.checklist.reload_if_changed()

        if self.state_machine.terminal:
            self.state_machine.reset()

        kill = self.kill_check()
        if not kill.ok:
            return self._halt(result, kill.error)

        trade_id = self.session.new_trade_id()
        context = ExecutionContext(state=Phase.IDLE.value, outputs={"analysis_context": self._analysis_context(analysis_context)})

        # ── MARKET_ANALYSIS ──────────────────────────────────────────
        phase = Phase.MARKET_ANALYSIS
        outcome = self._transition(phase)
        if not outcome.ok:
            return self._halt(result, outcome.error)
        context = context.seed_for(phase.value)
        capability = self.state_machine.capability(phase)
        display.phase_start(phase.key, capability.max_iterations, capability.timeout)

        report = self._checks(phase, context, "pre")
        if not report.passed:
            self._record(result, self._rejected(phase, report.reason))
            return self._fail_checklist(result, report, "analysis_failed")

        phase_result, trade_plan, failed_status = self._analyse(task, context, result)
        self._record(result, phase_result)
        kill = self.kill_check()
        if not kill.ok or phase_result.status == PhaseStatus.HALTED:
            return self._halt(result, kill.error or phase_result.reason)
        if trade_plan is None:
            to = Phase.COMPLETE if failed_status == "no_trade" else Phase.REJECTED
            return self._finish(result, failed_status, {"reason": phase_result.reason}, to=to)

        report = self._checks(phase, context, "post")
        if not report.passed:
            result.phases[phase.key] = self._rejected(phase, report.reason, phase_result)
            return self._fail_checklist(result, report, "analysis_failed")
        result.trade_plan = trade_plan

        # ── PLAN_VALIDATION ──────────────────────────────────────────
        phase = Phase.PLAN_VALIDATION
        outcome = self._transition(phase)
        if not outcome.ok:
            return self._halt(result, outcome.error)
        context = context.seed_for(phase.value)
        capability = self.state_machine.capability(phase)
        display.phase_start(phase.key, capability.max_iterations, capability.timeout)

        report = self._checks(phase, context, "pre")
        if not report.passed:
            self._record(result, self._rejected(phase, report.reason))
            return self._fail_checklist(result, report, "validation_failed")

        phase_result, executable = self._validate(trade_plan, context)
        self._record(result, phase_result)
        kill = self.kill_check()
        if not kill.ok or phase_result.status == PhaseStatus.HALTED:
            return self._halt(result, kill.error or phase_result.reason)
        # Execution never starts unless validation is exactly approved.
        if phase_result.status != PhaseStatus.APPROVED or executable is None:
            return self._finish(result, "validation_failed", {"reason": phase_result.reason})

        report = self._checks(phase, context, "post")
        if not report.passed:
            result.phases[phase.key] = self._rejected(phase, report.reason, phase_result)
            return self._fail_checklist(result, report, "validation_failed")
        result.executable_plan = executable
        display.executable_plan(executable)

        # ── ORDER_EXECUTION ──────────────────────────────────────────
        phase = Phase.ORDER_EXECUTION
        outcome = self._transition(phase)
        if not outcome.ok:
            return self._halt(result, outcome.error)
        context = context.seed_for(phase.value)
        context.put("final_quantity", executable.quantity)
        context.put("stoploss", executable.stop_loss)
        context.put("position_size", _open_quantity(context.lookup("open_positions")))
        capability = self.state_machine.capability(phase)
        display.phase_start(phase.key, capability.max_iterations, capability.timeout)

        report = self._checks(phase, context, "pre")
        if not report.passed:
            self._record(result, self._rejected(phase, report.reason))
            return self._fail_checklist(result, report, "execution_failed")
        context.pass_guard("ExecutionGuard")

        try:
            phase_result = self._execute(trade_id, executable, context)
        finally:
            self.session.release_trade(trade_id)
        order_id = context.lookup("order_id")
        if phase_result.status == PhaseStatus.COMPLETED and order_id is None:
            phase_result = self._rejected(phase, f"No order id returned ({phase_result.reason})", phase_result)
        self._record(result, phase_result)

        kill = self.kill_check()
        if not kill.ok or phase_result.status == PhaseStatus.HALTED:
            return self._halt(result, kill.error or phase_result.reason)
        if order_id is None:
            return self._finish(result, "execution_failed", {"reason": phase_result.reason})

        result.order_receipt = _receipt(order_id, context)
        report = self._checks(phase, context, "post")
        if not report.passed:
            # The order exists; every failure here needs an operator.
            display.checklist_failed(report.phase, report.reason, report.action)
            return self._halt(result, f"Checklist {report.phase}: {report.reason}")

        # ── POSITION_TRACK ───────────────────────────────────────────
        phase = Phase.POSITION_TRACK
        outcome = self._transition(phase)
        if not outcome.ok:
            return self._halt(result, outcome.error)
        context = context.seed_for(phase.value)

        report = self._checks(phase, context, "pre")
        if not report.passed:
            display.checklist_failed(report.phase, report.reason, report.action)
            return self._halt(result, f"Checklist {report.phase}: {report.reason}")

        self._record(result, self._track(executable))
        return self._finish(result, "executed", result.order_receipt, to=Phase.COMPLETE)


def _open_quantity(positions: Any) -> int:
    if not isinstance(positions, list):
        return 0
    total = 0
    for position in positions:
        quantity = position.get("quantity") if isinstance(position, dict) else None
        if isinstance(quantity, (int, float)):
            total += abs(int(quantity))
    return total


def _receipt(order_id: Any, context: ExecutionContext) -> dict[str, Any]:
    for result in reversed(context.results):
        if result.ok and result.tool.endswith(".place"):
            payload = result.result if isinstance(result.result, dict) else {"result": result.result}
            return {"order_id": order_id, "tool": result.tool, **payload}
    return {"order_id": order_id}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_orchestrator(
    settings: Settings,
    registry: ToolRegistry,
    planner: Planner | None = None,
    session: TradingSession | None = None,
    **kwargs: Any,
) -> PhaseOrchestrator:
    """Wire an orchestrator from settings. Extra keyword arguments pass through."""
    planner = planner or OpenAIPlanner(
        model=settings.planner_model,
        base_url=settings.planner_base_url,
        api_key=settings.planner_api_key,
    )
    session = session or TradingSession(DailyLossTracker(settings.daily_loss_cap))
    risk = RiskConverter(
        account_balance=settings.account_balance,
        max_risk_percent=settings.max_risk_percent,
        instrument=instrument_spec(settings.instrument, settings.lot_size, settings.max_sl_percent),
        sl_fallback=settings.sl_fallback,
    )
    safety = SafetyGate(
        trading_rules(
            max_position_size=settings.max_position_size,
            require_stoploss=settings.require_stoploss,
            dry_run_only=settings.dry_run_only,
            dry_run=settings.dry_run,
        )
    )
    budgets = {
        Phase.MARKET_ANALYSIS: (settings.analysis_max_iterations, settings.analysis_timeout),
        Phase.PLAN_VALIDATION: (settings.validation_max_iterations, settings.validation_timeout),
        Phase.ORDER_EXECUTION: (settings.execution_max_iterations, settings.execution_timeout),
    }
    capabilities = {
        phase: DEFAULT_CAPABILITIES[phase].model_copy(update={"max_iterations": n, "timeout": t})
        for phase, (n, t) in budgets.items()
    }
    kwargs.setdefault("date_mode", settings.date_mode)
    kwargs.setdefault("interval", settings.candle_interval)
    kwargs.setdefault("max_parallel_tools", settings.max_parallel_tools)
    kwargs.setdefault("stale_after", settings.tracker_stale_after)
    kwargs.setdefault("tier_max_iterations", settings.tier_max_iterations)
    return PhaseOrchestrator(
        registry=registry,
        planner=planner,
        risk=risk,
        session=session,
        checklist=ChecklistGuard(settings.checklist_path),
        safety=safety,
        state_machine=StateMachine(capabilities),
        **kwargs,
    )
