# tracker.py
# Post-execution position tracking.
#
# Planner-free. A deterministic rules engine consumes a live tick feed in its
# own thread and publishes exit events on a queue the orchestrator drains.
# The tracker talks to the rest of the process only through that queue and
# the session flags.

import logging
import queue
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from phase_guard.models import ExecutablePlan, utcnow
from phase_guard.session import FEED_CONNECTED, POSITION_OPEN, TradingSession

logger = logging.getLogger(__name__)


class Tick(BaseModel):
    price: float = Field(..., gt=0)
    timestamp: datetime = Field(default_factory=utcnow)


ExitKind = Literal["stop_loss", "partial_target", "final_target", "feed_lost"]


class ExitEvent(BaseModel):
    kind: ExitKind
    price: float | None = None
    quantity: int = 0
    pnl: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    reason: str = ""


class PositionTracker:
    def __init__(
        self,
        plan: ExecutablePlan,
        feed: Iterable[Tick],
        session: TradingSession,
        stale_after: float = 30.0,
    ) -> None:
        self.plan = plan
        self._feed = feed
        self._session = session
        self.stale_after = stale_after
        self.events: "queue.Queue[ExitEvent]" = queue.Queue()
        self.remaining = plan.quantity
        self._partial_done = False
        self._last_tick: datetime | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def open(self) -> bool:
        return self.remaining > 0

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _exit(self, kind: ExitKind, price: float | None, quantity: int, reason: str) -> ExitEvent:
        pnl = 0.0
        if price is not None:
            pnl = round((price - self.plan.entry_price) * quantity, 2)
        self.remaining -= quantity
        if pnl < 0 and self._session.daily_loss is not None:
            self._session.daily_loss.add_loss(-pnl)
        if not self.open:
            self._session.set_flag(POSITION_OPEN, False)
        event = ExitEvent(kind=kind, price=price, quantity=quantity, pnl=pnl, reason=reason)
        self.events.put(event)
        logger.info("Exit %s: %d @ %s (pnl %.2f)", kind, quantity, price, pnl)
        return event

    def _feed_lost(self, reason: str) -> ExitEvent:
        self._session.set_flag(FEED_CONNECTED, False, reason=reason)
        event = ExitEvent(kind="feed_lost", reason=reason)
        self.events.put(event)
        logger.warning("Feed lost with %d open: %s", self.remaining, reason)
        return event

    def process(self, tick: Tick) -> list[ExitEvent]:
        """Apply one tick. Returns the events it produced."""
        if not self.open:
            return []

        produced: list[ExitEvent] = []
        if self._last_tick is not None:
            gap = (tick.timestamp - self._last_tick).total_seconds()
            if gap > self.stale_after:
                produced.append(self._feed_lost(f"no tick for {gap:.0f}s"))
        self._last_tick = tick.timestamp

        price = tick.price
        if price <= self.plan.stop_loss:
            produced.append(self._exit("stop_loss", price, self.remaining, "stop loss hit"))
        elif price >= self.plan.final_target.price:
            produced.append(self._exit("final_target", price, self.remaining, "final target hit"))
        elif price >= self.plan.partial_target.price and not self._partial_done:
            self._partial_done = True
            # Whole lots only. A single-lot position rides to stop or final.
            lots = self.plan.lots * self.plan.partial_target.exit_pct // 100
            quantity = min(lots * self.plan.lot_size, self.remaining)
            if quantity > 0:
                produced.append(self._exit("partial_target", price, quantity, "partial target hit"))
        return produced

    # ------------------------------------------------------------------
    # Thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        for tick in self._feed:
            if self._stop.is_set():
                return
            self.process(tick)
            if not self.open:
                return
        if self.open:
            self._feed_lost("feed ended while position open")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._session.set_flag(POSITION_OPEN, True)
        self._thread = threading.Thread(target=self._run, name=f"tracker-{self.plan.security_id}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_exit_events(self) -> list[ExitEvent]:
        """Drain every queued event without blocking."""
        drained: list[ExitEvent] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained
