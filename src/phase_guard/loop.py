# loop.py
# Bounded phase loop.
#
# The loop is the kernel of a phase. The planner is a passive responder;
# this class owns iteration, budget, verification and dispatch.
#
# Per iteration:
#   kill switch → timeout → planner call → decision verification
#   → final?  → output verification → completed
#   → tools?  → dependencies → safety gate → admission hook → dispatch
#   → stop predicate
#
# Failed tool calls are never retried here. The planner may propose the
# call again on a later iteration, and it goes through every check again.

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from pydantic import BaseModel, ValidationError

from phase_guard.context import ExecutionContext
from phase_guard.dependencies import DependencyEnforcer
from phase_guard.models import (
    Outcome,
    PhaseResult,
    PhaseStatus,
    PlannerDecision,
    ToolCall,
    ToolDescriptor,
    ToolResult,
    TraceEntry,
)
from phase_guard.planner import Planner, PlannerError, PlannerOutputError
from phase_guard.safety import SafetyGate
from phase_guard.tools import ScopedRegistry, ToolRegistry

logger = logging.getLogger(__name__)

# Returns veto messages for a call that passed dependency and safety checks.
AdmissionHook = Callable[[str, dict[str, Any], ExecutionContext, ToolDescriptor | None], list[str]]
# Wraps the dispatch of an order-placing call.
OrderDispatch = Callable[[str, dict[str, Any], Callable[[], ToolResult]], ToolResult]
StopPredicate = Callable[[Sequence[ToolResult]], bool]
KillCheck = Callable[[], Outcome]

# Results shown back to the planner each iteration.
_RECENT_RESULTS = 5


# ---------------------------------------------------------------------------
# Stop predicates
# ---------------------------------------------------------------------------


def all_failed(results: Sequence[ToolResult]) -> bool:
    """Every result is an error or a rejection."""
    return bool(results) and all(r.status in ("error", "rejected") for r in results)


def all_errored(results: Sequence[ToolResult]) -> bool:
    """
    Every dispatched call failed.

    Rejections are excluded so the planner gets its next iteration to fix
    the preconditions it was told about.
    """
    return bool(results) and all(r.status == "error" for r in results)


def _rejected(call: ToolCall, args: dict[str, Any], error: str, **errors: list[str]) -> ToolResult:
    return ToolResult(status="rejected", tool=call.tool_name, args=args, error=error, **errors)


# ---------------------------------------------------------------------------
# PhaseLoop
# ---------------------------------------------------------------------------


class PhaseLoop:
    """
    Runs one phase under a hard iteration cap and wall-clock budget.

    Example:
        loop = PhaseLoop(
            "market_analysis", planner, registry.view(allowed),
            enforcer, SafetyGate(trading_rules()),
            max_iterations=8, timeout=60.0, output_model=TradePlan,
        )
        result = loop.run("Analyse NIFTY", context)
    """

    def __init__(
        self,
        name: str,
        planner: Planner,
        registry: ToolRegistry | ScopedRegistry,
        enforcer: DependencyEnforcer,
        safety: SafetyGate,
        max_iterations: int,
        timeout: float,
        output_model: type[BaseModel] | None = None,
        admission: AdmissionHook | None = None,
        order_dispatch: OrderDispatch | None = None,
        stop_predicate: StopPredicate | None = all_errored,
        kill_check: KillCheck | None = None,
        on_unexpected_output: Callable[[str], None] | None = None,
        max_parallel_tools: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._planner = planner
        self._registry = registry
        self._enforcer = enforcer
        self._safety = safety
        self.max_iterations = max_iterations
        self.timeout = timeout
        self._output_model = output_model
        self._admission = admission
        self._order_dispatch = order_dispatch
        self._stop_predicate = stop_predicate
        self._kill_check = kill_check
        self._on_unexpected_output = on_unexpected_output
        self._max_parallel_tools = max(1, max_parallel_tools)
        self._clock = clock

    # ------------------------------------------------------------------
    # Planner I/O
    # ------------------------------------------------------------------

    def _schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"tools": self._registry.descriptors()}
        if self._output_model is not None:
            schema["output_schema"] = self._output_model.model_json_schema()
        return schema

    def _planner_context(self, iteration: int, context: ExecutionContext) -> dict[str, Any]:
        return {
            "phase": self.name,
            "iteration": iteration,
            "max_iterations": self.max_iterations,
            "state": context.state,
            "outputs": context.outputs,
            "tool_calls": dict(context.tool_calls),
            "recent_results": [
                r.model_dump(mode="json", exclude_defaults=True) for r in context.results[-_RECENT_RESULTS:]
            ],
        }

    def _unexpected(self, reason: str) -> None:
        if self._on_unexpected_output is not None:
            self._on_unexpected_output(reason)

    def _verify_final(self, output: Any) -> tuple[Any, list[str]]:
        if self._output_model is None:
            return output, []
        try:
            return self._output_model.model_validate(output), []
        except ValidationError as exc:
            return None, [f"{'.'.join(str(p) for p in e['loc']) or 'output'}: {e['msg']}" for e in exc.errors()]

    # ------------------------------------------------------------------
    # Tool pipeline
    # ------------------------------------------------------------------

    def _admit(self, call: ToolCall, context: ExecutionContext) -> tuple[dict[str, Any], ToolResult | None]:
        """
        Dependency enforcer → safety gate → admission hook.

        Returns the resolved arguments and, when the call is refused, the
        rejection result. Nothing is dispatched here.
        """
        name = call.tool_name
        descriptor = self._registry.descriptor(name)
        if descriptor is None:
            # Unknown or out-of-phase tool: the registry answers with the error.
            return dict(call.tool_args), None

        args = self._enforcer.resolve_derived_inputs(name, call.tool_args, context)

        report = self._enforcer.validate(name, context)
        if not report.valid:
            logger.info("Dependency check failed for %s: %s", name, "; ".join(report.errors))
            return args, _rejected(
                call, args, "Dependency check failed: " + "; ".join(report.errors), validation_errors=report.errors
            )

        verdict = self._safety.check(name, args, context, descriptor)
        if not verdict.allowed:
            return args, _rejected(call, args, f"Safety check failed: {verdict.reason}", safety_errors=verdict.errors)

        if self._admission is not None:
            vetoes = self._admission(name, args, context, descriptor)
            if vetoes:
                logger.info("Admission refused %s: %s", name, "; ".join(vetoes))
                return args, _rejected(call, args, "Admission refused: " + "; ".join(vetoes), safety_errors=vetoes)

        return args, None

    def _dispatch(self, name: str, args: dict[str, Any]) -> ToolResult:
        descriptor = self._registry.descriptor(name)
        if descriptor is not None and descriptor.places_orders and self._order_dispatch is not None:
            return self._order_dispatch(name, args, lambda: self._registry.call(name, args))
        return self._registry.call(name, args)

    def _side_effect_free(self, name: str) -> bool:
        descriptor = self._registry.descriptor(name)
        return descriptor is not None and not descriptor.side_effects and not descriptor.places_orders

    def _places_orders(self, name: str) -> bool:
        descriptor = self._registry.descriptor(name)
        return descriptor is not None and descriptor.places_orders

    def _run_one(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        args, rejection = self._admit(call, context)
        result = rejection if rejection is not None else self._dispatch(call.tool_name, args)
        context.record_result(result, self._registry.descriptor(call.tool_name))
        return result

    def _execute(self, calls: list[ToolCall], context: ExecutionContext) -> list[tuple[ToolCall, ToolResult]]:
        done: list[tuple[ToolCall, ToolResult]] = []

        # An order-placing call is only accepted on its own.
        if len(calls) > 1:
            remaining = []
            for call in calls:
                if self._places_orders(call.tool_name):
                    rejection = _rejected(
                        call,
                        dict(call.tool_args),
                        "Order-placing tools cannot be batched",
                        safety_errors=[f"{call.tool_name} must be the only call in its iteration"],
                    )
                    context.record_result(rejection, self._registry.descriptor(call.tool_name))
                    done.append((call, rejection))
                else:
                    remaining.append(call)
            calls = remaining

        if len(calls) < 2 or not all(self._side_effect_free(c.tool_name) for c in calls):
            # One at a time: each admission sees every earlier result.
            for call in calls:
                done.append((call, self._run_one(call, context)))
            return done

        # Read-only batch. Checks run against the context as it stands
        # before any of these calls are dispatched.
        admitted: list[tuple[ToolCall, dict[str, Any]]] = []
        for call in calls:
            args, rejection = self._admit(call, context)
            if rejection is not None:
                context.record_result(rejection, self._registry.descriptor(call.tool_name))
                done.append((call, rejection))
            else:
                admitted.append((call, args))

        workers = max(1, min(self._max_parallel_tools, len(admitted)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{self.name}-tool") as pool:
            futures = {pool.submit(self._dispatch, call.tool_name, args): call for call, args in admitted}
            # The loop stays the only writer: results are applied here, in
            # completion order.
            for future in as_completed(futures):
                call = futures[future]
                result = future.result()
                context.record_result(result, self._registry.descriptor(call.tool_name))
                done.append((call, result))
        return done

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, task: str, context: ExecutionContext) -> PhaseResult:
        start = self._clock()
        trace: list[TraceEntry] = []
        iterations = 0

        def finish(status: PhaseStatus, reason: str, final_output: Any = None) -> PhaseResult:
            duration = self._clock() - start
            logger.info("Phase %s finished: %s (%s) after %d iteration(s)", self.name, status.value, reason, iterations)
            return PhaseResult(
                phase=self.name,
                status=status,
                reason=reason,
                iterations=iterations,
                max_iterations=self.max_iterations,
                duration=duration,
                trace=trace,
                final_output=final_output,
            )

        schema = self._schema()

        while iterations < self.max_iterations:
            if self._kill_check is not None:
                kill = self._kill_check()
                if not kill.ok:
                    return finish(PhaseStatus.HALTED, kill.error or "Kill switch triggered")

            if self._clock() - start > self.timeout:
                return finish(PhaseStatus.TIMEOUT, f"Phase exceeded {self.timeout:g}s budget")

            iterations += 1
            try:
                raw = self._planner.plan(task, schema, self._planner_context(iterations, context))
            except PlannerOutputError as exc:
                trace.append(TraceEntry(iteration=iterations))
                self._unexpected(str(exc))
                return finish(PhaseStatus.VERIFICATION_FAILED, str(exc))
            except PlannerError as exc:
                trace.append(TraceEntry(iteration=iterations))
                return finish(PhaseStatus.ERROR, str(exc))

            plan = raw if isinstance(raw, dict) else {"raw": raw}
            try:
                decision = PlannerDecision.model_validate(raw)
            except ValidationError as exc:
                trace.append(TraceEntry(iteration=iterations, plan=plan))
                reason = f"Planner output failed verification: {exc.error_count()} error(s): " + "; ".join(
                    e["msg"] for e in exc.errors()
                )
                self._unexpected(reason)
                return finish(PhaseStatus.VERIFICATION_FAILED, reason)

            if decision.action == "final":
                trace.append(TraceEntry(iteration=iterations, plan=plan))
                output, errors = self._verify_final(decision.final_output)
                if errors:
                    reason = "Final output failed verification: " + "; ".join(errors)
                    self._unexpected(reason)
                    return finish(PhaseStatus.VERIFICATION_FAILED, reason)
                return finish(PhaseStatus.COMPLETED, decision.stop_reason or "Planner declared final output", output)

            calls = decision.tool_calls()
            if not calls:
                trace.append(TraceEntry(iteration=iterations, plan=plan))
                reason = f"Planner action '{decision.action}' carried no tool call"
                self._unexpected(reason)
                return finish(PhaseStatus.VERIFICATION_FAILED, reason)

            # A kill flag raised while the planner was thinking still wins.
            if self._kill_check is not None:
                kill = self._kill_check()
                if not kill.ok:
                    trace.append(TraceEntry(iteration=iterations, plan=plan))
                    return finish(PhaseStatus.HALTED, kill.error or "Kill switch triggered")

            executed = self._execute(calls, context)
            for call, result in executed:
                trace.append(TraceEntry(iteration=iterations, plan=plan, tool_call=call, result=result))

            latest = [result for _, result in executed]
            if self._stop_predicate is not None and self._stop_predicate(latest):
                errors = "; ".join(r.error or r.status for r in latest)
                return finish(PhaseStatus.COMPLETED, f"Stop condition met: {errors}")

        return finish(PhaseStatus.MAX_ITERATIONS, f"Reached max iterations ({self.max_iterations})")
