# dependencies.py
# Dependency enforcement: workflow preconditions for a tool call.
#
# Every dependency kind is checked independently and every violation is
# reported, so the planner can fix all of them in one go. Nothing in here
# raises on bad context data; malformed input becomes a validation error.

from collections.abc import Callable
from datetime import date
from typing import Any, Protocol

from phase_guard.context import ExecutionContext
from phase_guard.models import Dependencies, ToolDescriptor, ValidationReport
from phase_guard.trading_calendar import TradingCalendar


class DescriptorSource(Protocol):
    def descriptor(self, name: str) -> ToolDescriptor | None: ...


class DependencyEnforcer:
    """Validates declared preconditions and resolves derived arguments."""

    def __init__(
        self,
        registry: DescriptorSource,
        calendar: TradingCalendar | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._registry = registry
        self._calendar = calendar or TradingCalendar()
        self._today = today

    def _dependencies(self, tool_name: str) -> Dependencies | None:
        descriptor = self._registry.descriptor(tool_name)
        return descriptor.dependencies if descriptor else None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, tool_name: str, context: ExecutionContext) -> ValidationReport:
        deps = self._dependencies(tool_name)
        if deps is None:
            return ValidationReport(valid=True)

        errors: list[str] = []

        for key in deps.required_outputs:
            if not context.has(key):
                errors.append(f"Missing required output: {key} (from previous tool)")

        if deps.required_states and context.state not in deps.required_states:
            errors.append(
                f"Invalid state: required one of {', '.join(deps.required_states)}, current '{context.state}'"
            )

        if context.state in deps.forbidden_states:
            errors.append(f"Tool forbidden in state: {context.state}")

        for guard in deps.required_guards:
            if guard not in context.guards_passed:
                errors.append(f"Guard not passed: {guard}")

        for event in deps.forbidden_after:
            if event in context.events:
                errors.append(f"Tool forbidden after event: {event}")

        if context.caller_type in deps.forbidden_callers:
            errors.append(f"Tool forbidden for caller type: {context.caller_type}")

        if deps.max_calls_per_trade is not None:
            count = context.call_count(tool_name)
            if count >= deps.max_calls_per_trade:
                errors.append(
                    f"Tool call limit exceeded: max {deps.max_calls_per_trade} per trade, "
                    f"already called {count} times"
                )

        for required in deps.required_tools:
            if context.call_count(required) == 0:
                errors.append(f"Required tool not called: {required}")

        if deps.date_constraints:
            errors.extend(self._validate_dates(deps.date_constraints, context))

        return ValidationReport.from_errors(errors)

    def _validate_dates(self, constraints: dict[str, dict[str, Any]], context: ExecutionContext) -> list[str]:
        analysis = context.lookup("analysis_context")
        if not isinstance(analysis, dict):
            return ["Missing analysis_context for date validation"]

        mode = analysis.get("date_mode")
        if not mode:
            return ["Missing date_mode in analysis_context"]

        raw_from, raw_to = analysis.get("from_date"), analysis.get("to_date")
        if not raw_from or not raw_to:
            return ["Missing from_date or to_date in analysis_context"]

        try:
            from_date = _parse_date(raw_from)
            to_date = _parse_date(raw_to)
        except (TypeError, ValueError) as exc:
            return [f"Invalid date format: {exc}"]

        mode = str(mode).upper()
        if mode not in ("LIVE", "HISTORICAL"):
            return [f"Unknown date_mode: {mode}"]
        if mode not in constraints:
            return []

        errors: list[str] = []
        if mode == "LIVE":
            today = self._today()
            if to_date != today:
                errors.append(f"LIVE mode: to_date ({raw_to}) must be today ({today.isoformat()})")
            if not from_date < to_date:
                errors.append(f"LIVE mode: from_date ({raw_from}) must be before to_date ({raw_to})")
        elif from_date > to_date:
            errors.append(f"HISTORICAL mode: from_date ({raw_from}) cannot be after to_date ({raw_to})")

        for label, day in (("from_date", from_date), ("to_date", to_date)):
            problem = self._calendar.validate_trading_day(day)
            if problem:
                errors.append(f"{mode} mode: {label} {problem}")

        return errors

    # ------------------------------------------------------------------
    # Derived inputs
    # ------------------------------------------------------------------

    def resolve_derived_inputs(
        self, tool_name: str, args: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """
        Fill arguments the planner left out from upstream outputs.

        Explicitly supplied arguments are never overwritten, so resolving an
        already-resolved argument set is a no-op. A null counts as left out.
        """
        deps = self._dependencies(tool_name)
        if deps is None or not deps.derived_inputs:
            return dict(args)

        resolved = dict(args)
        for arg_name, path in deps.derived_inputs.items():
            if resolved.get(arg_name) is not None:
                continue
            value = context.lookup(path)
            if value is not None:
                resolved[arg_name] = value
        return resolved


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())
