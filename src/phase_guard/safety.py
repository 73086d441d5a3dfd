# safety.py
# Safety gate: admission control over risk exposure.
#
# Independent of dependency enforcement. Dependencies answer "is this call in
# the right place in the workflow"; the safety gate answers "may this call
# add exposure". Both must pass before dispatch.

import logging
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import BaseModel, Field

from phase_guard.context import ExecutionContext
from phase_guard.models import ToolDescriptor

logger = logging.getLogger(__name__)

# A rule returns a veto reason, or None to allow.
SafetyRule = Callable[[str, dict[str, Any], ExecutionContext, ToolDescriptor | None], str | None]


class SafetyVerdict(BaseModel):
    allowed: bool
    reason: str | None = None
    errors: list[str] = Field(default_factory=list)


def _is_order_call(tool_name: str, descriptor: ToolDescriptor | None) -> bool:
    if descriptor is not None:
        return descriptor.places_orders
    return "order" in tool_name or tool_name.endswith(".place")


# ---------------------------------------------------------------------------
# Descriptor rules
# ---------------------------------------------------------------------------

# A descriptor rule is enforced when its text contains one of these keywords.
# Rules without a keyword (e.g. about reading candle data) are advisory: the
# planner sees them in the tool schema and nothing here checks them.
DescriptorCheck = Callable[[dict[str, Any], ExecutionContext], str | None]


def _stoploss_planned(args, context):
    return None if context.has("stoploss") else "missing stoploss in context"


def _within_planned_size(args, context):
    planned = context.lookup("final_quantity")
    requested = args.get("quantity")
    if planned is None or not isinstance(requested, (int, float)) or isinstance(requested, bool):
        return None
    if requested > planned:
        return f"quantity {requested:g} exceeds planned {planned}"
    return None


def _funds_verified(args, context):
    return None if context.has("available_capital") else "funds not fetched"


def _nearest_expiry(args, context):
    expiry = args.get("expiry")
    nearest = context.lookup("expiry_list[0]")
    if expiry is None or nearest is None or str(expiry) == str(nearest):
        return None
    return f"expiry {expiry} is not the nearest ({nearest})"


DESCRIPTOR_CHECKS: list[tuple[str, DescriptorCheck]] = [
    ("stoploss", _stoploss_planned),
    ("position size", _within_planned_size),
    ("funds", _funds_verified),
    ("nearest expiry", _nearest_expiry),
]


def descriptor_vetoes(descriptor: ToolDescriptor, args: dict[str, Any], context: ExecutionContext) -> list[str]:
    errors: list[str] = []
    for rule_text in descriptor.safety_rules:
        lowered = rule_text.lower()
        for keyword, check in DESCRIPTOR_CHECKS:
            if keyword not in lowered:
                continue
            detail = check(args, context)
            if detail:
                errors.append(f"Safety rule: {rule_text} ({detail})")
    return errors


class SafetyGate:
    """Evaluates every rule in order and collects all vetoes."""

    def __init__(self, rules: Sequence[SafetyRule] = ()) -> None:
        self._rules = list(rules)

    def add_rule(self, rule: SafetyRule) -> None:
        self._rules.append(rule)

    def check(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        descriptor: ToolDescriptor | None = None,
    ) -> SafetyVerdict:
        errors: list[str] = []

        for rule in self._rules:
            veto = rule(tool_name, args, context, descriptor)
            if veto:
                errors.append(veto)

        if descriptor is not None:
            errors.extend(descriptor_vetoes(descriptor, args, context))

        if errors:
            logger.info("Safety gate vetoed %s: %s", tool_name, "; ".join(errors))
            return SafetyVerdict(allowed=False, reason="; ".join(errors), errors=errors)
        return SafetyVerdict(allowed=True)


def trading_rules(
    max_position_size: int | None = None,
    require_stoploss: bool = True,
    dry_run_only: bool = False,
    dry_run: bool = False,
) -> list[SafetyRule]:
    """
    The canonical trading rules.

    ``dry_run`` is the explicit run flag from settings. With ``dry_run_only``
    set, order calls are refused unless that flag is on.
    """
    rules: list[SafetyRule] = []

    if require_stoploss:

        def stoploss_required(tool_name, args, context, descriptor):
            if _is_order_call(tool_name, descriptor) and not context.has("stoploss"):
                return "Cannot place order without stoploss in context"
            return None

        rules.append(stoploss_required)

    if max_position_size is not None:

        def position_cap(tool_name, args, context, descriptor):
            if not _is_order_call(tool_name, descriptor):
                return None
            requested = args.get("quantity") or 0
            current = context.lookup("position_size") or 0
            try:
                projected = float(current) + float(requested)
            except (TypeError, ValueError):
                return f"Order quantity is not numeric: {requested!r}"
            if projected > max_position_size:
                return f"Order would exceed max position size: {projected:g} > {max_position_size}"
            return None

        rules.append(position_cap)

    if dry_run_only:

        def dry_run_required(tool_name, args, context, descriptor):
            if _is_order_call(tool_name, descriptor) and not dry_run:
                return "Trading disabled - dry-run mode required"
            return None

        rules.append(dry_run_required)

    return rules
