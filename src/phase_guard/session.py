# session.py
# Process-wide trading session: kill flags, daily loss, order mutual exclusion.
#
# One session is shared by every run in the process and by the position
# tracker thread, so all mutation goes through a lock. Nothing here is
# module-level state; callers own the session and inject it.

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date
from typing import Any

from phase_guard.integrity import FingerprintLog, fingerprint

logger = logging.getLogger(__name__)

# Flag names the kill switch understands.
FEED_CONNECTED = "feed_connected"
POSITION_OPEN = "position_open"
DUPLICATE_EXECUTION = "duplicate_execution"
INVALID_STATE_TRANSITION = "invalid_state_transition"
UNEXPECTED_PLANNER_OUTPUT = "unexpected_planner_output"


# ---------------------------------------------------------------------------
# Daily loss
# ---------------------------------------------------------------------------


class DailyLossTracker:
    """
    Realised loss for the current trading day against a fixed cap.

    The counter resets the first time it is touched on a new calendar day.
    """

    def __init__(self, cap: float, today: Callable[[], date] = date.today) -> None:
        self.cap = float(cap)
        self._today = today
        self._day = today()
        self._loss = 0.0
        self._lock = threading.Lock()

    def _roll(self) -> None:
        current = self._today()
        if current != self._day:
            logger.info("Daily loss reset for %s (was %.2f on %s)", current, self._loss, self._day)
            self._day = current
            self._loss = 0.0

    def add_loss(self, amount: float) -> float:
        """Record a realised loss (positive number). Returns the day's total."""
        with self._lock:
            self._roll()
            self._loss += abs(float(amount))
            return self._loss

    @property
    def current_loss(self) -> float:
        with self._lock:
            self._roll()
            return self._loss

    @property
    def remaining(self) -> float:
        return max(self.cap - self.current_loss, 0.0)

    @property
    def breached(self) -> bool:
        return self.current_loss >= self.cap

    def can_trade(self, amount: float = 0.0) -> bool:
        return self.current_loss + abs(float(amount)) < self.cap


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TradingSession:
    def __init__(self, daily_loss: DailyLossTracker | None = None) -> None:
        self.daily_loss = daily_loss
        self.fingerprints = FingerprintLog()
        self._flags: dict[str, bool] = {FEED_CONNECTED: True, POSITION_OPEN: False}
        self._reasons: dict[str, str] = {}
        self._lock = threading.Lock()
        self._order_locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def set_flag(self, name: str, value: bool = True, reason: str | None = None) -> None:
        with self._lock:
            self._flags[name] = value
            if reason:
                self._reasons[name] = reason
        if value and name not in (FEED_CONNECTED, POSITION_OPEN):
            logger.warning("Session flag raised: %s%s", name, f" ({reason})" if reason else "")

    def flag(self, name: str) -> bool:
        with self._lock:
            return self._flags.get(name, False)

    def reason(self, name: str) -> str | None:
        with self._lock:
            return self._reasons.get(name)

    @property
    def feed_connected(self) -> bool:
        return self.flag(FEED_CONNECTED)

    @property
    def position_open(self) -> bool:
        return self.flag(POSITION_OPEN)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            flags = dict(self._flags)
        if self.daily_loss is not None:
            flags["daily_loss"] = self.daily_loss.current_loss
        return flags

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @staticmethod
    def new_trade_id() -> str:
        return uuid.uuid4().hex

    @contextmanager
    def order_slot(self, trade_id: str) -> Iterator[bool]:
        """
        Non-blocking per-trade lock around an order call.

        Yields False (and raises the duplicate-execution flag) when another
        order for the same trade is already in flight.
        """
        with self._lock:
            lock = self._order_locks.setdefault(trade_id, threading.Lock())

        if not lock.acquire(blocking=False):
            self.set_flag(DUPLICATE_EXECUTION, reason=f"concurrent order for trade {trade_id}")
            yield False
            return
        try:
            yield True
        finally:
            lock.release()

    def release_trade(self, trade_id: str) -> None:
        """Forget the order lock of a finished trade. Fingerprints are kept."""
        with self._lock:
            self._order_locks.pop(trade_id, None)

    def register_order(self, trade_id: str, tool_name: str, args: dict[str, Any]) -> bool:
        """Record an order fingerprint. A repeat flags duplicate execution."""
        if self.fingerprints.record(fingerprint(trade_id, tool_name, args)):
            return True
        self.set_flag(DUPLICATE_EXECUTION, reason=f"repeated {tool_name} for trade {trade_id}")
        return False
