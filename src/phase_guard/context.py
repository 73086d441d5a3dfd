# context.py
# ExecutionContext: the single mutable accumulator threaded through a phase.
#
# Every lookup uses plain string keys. The bounded loop is the only writer
# during a phase; the orchestrator folds the context into the next phase's
# seed at the boundary.

import re
from typing import Any

from phase_guard.models import ToolDescriptor, ToolResult

_PATH_TOKEN = re.compile(r"[^.\[\]]+")

# Result payload keys that commonly wrap a produced output.
_UNWRAP_KEYS: dict[str, tuple[str, ...]] = {
    "expiry_list": ("expiries", "data"),
    "intraday_candles": ("candles",),
    "daily_candles": ("candles",),
    "available_capital": ("available_balance", "available"),
    "open_positions": ("positions",),
    "orders": ("orders",),
    "order_id": ("order_id",),
}


def dig(data: Any, path: str) -> Any:
    """
    Resolve a dotted / indexed path such as ``instrument.security_id`` or
    ``expiry_list[0]``. Returns None when any segment is missing.
    """
    current = data
    for part in _PATH_TOKEN.findall(str(path)):
        if current is None:
            return None
        if part.isdigit():
            if not isinstance(current, (list, tuple)):
                return None
            index = int(part)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


class ExecutionContext:
    """Canonically keyed state for one phase run."""

    def __init__(
        self,
        state: str,
        outputs: dict[str, Any] | None = None,
        events: set[str] | None = None,
        guards_passed: set[str] | None = None,
        caller_type: str = "LLM",
    ) -> None:
        self.state = state
        self.caller_type = caller_type
        self.outputs: dict[str, Any] = dict(outputs or {})
        self.events: set[str] = set(events or ())
        self.guards_passed: set[str] = set(guards_passed or ())
        self.tool_calls: dict[str, int] = {}
        self.results: list[ToolResult] = []

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def lookup(self, path: str) -> Any:
        return dig(self.outputs, path)

    def has(self, path: str) -> bool:
        return self.lookup(path) is not None

    def call_count(self, tool_name: str) -> int:
        return self.tool_calls.get(tool_name, 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, key: str, value: Any) -> None:
        self.outputs[key] = value

    def record_event(self, event: str) -> None:
        self.events.add(event)

    def pass_guard(self, guard: str) -> None:
        self.guards_passed.add(guard)

    def record_result(self, result: ToolResult, descriptor: ToolDescriptor | None = None) -> None:
        """
        Count the call, keep the result, and publish any produced outputs.

        Rejected calls never reached a handler and do not count toward call
        limits. Outputs are only published for successful calls, under the
        keys the descriptor declares in ``dependencies.produces``.
        """
        if result.status != "rejected":
            self.tool_calls[result.tool] = self.tool_calls.get(result.tool, 0) + 1
        self.results.append(result)

        if not result.ok or descriptor is None:
            return

        for key in descriptor.dependencies.produces:
            self.outputs[key] = _extract_output(key, result.result)

    # ------------------------------------------------------------------
    # Phase boundary
    # ------------------------------------------------------------------

    def seed_for(self, next_state: str) -> "ExecutionContext":
        """Fresh context for the next phase carrying outputs, events and guards."""
        return ExecutionContext(
            state=next_state,
            outputs=self.outputs,
            events=self.events,
            guards_passed=self.guards_passed,
            caller_type=self.caller_type,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "caller_type": self.caller_type,
            "tool_calls": dict(self.tool_calls),
            "events": sorted(self.events),
            "guards_passed": sorted(self.guards_passed),
            "outputs": dict(self.outputs),
        }


def _extract_output(key: str, payload: Any) -> Any:
    if isinstance(payload, dict):
        if key in payload and len(payload) == 1:
            return payload[key]
        for candidate in _UNWRAP_KEYS.get(key, ()):
            if candidate in payload:
                return payload[candidate]
    return payload
