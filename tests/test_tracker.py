from datetime import datetime, timedelta, timezone

import pytest

from phase_guard.checklist import KillSwitch
from phase_guard.models import ExecutablePlan, TargetLevel
from phase_guard.session import FEED_CONNECTED, POSITION_OPEN
from phase_guard.tracker import PositionTracker, Tick

START = datetime(2026, 1, 6, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def plan():
    return ExecutablePlan(
        instrument="NIFTY",
        security_id="OPT-1",
        entry_price=100.0,
        stop_loss=90.0,
        stop_loss_percent=0.1,
        partial_target=TargetLevel(price=112.0, rr=1.2),
        final_target=TargetLevel(price=120.0, rr=2.0),
        lots=2,
        lot_size=75,
        quantity=150,
        total_risk=1500.0,
        required_margin=15000.0,
    )


def tick(price, seconds=0):
    return Tick(price=price, timestamp=START + timedelta(seconds=seconds))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def test_stop_loss_exits_everything_and_books_loss(plan, session):
    session.set_flag(POSITION_OPEN, True)
    tracker = PositionTracker(plan, [], session)

    events = tracker.process(tick(89.0))

    assert [e.kind for e in events] == ["stop_loss"]
    assert events[0].quantity == 150
    assert events[0].pnl == -1650.0
    assert session.daily_loss.current_loss == 1650.0
    assert not tracker.open
    assert not session.position_open


def test_partial_then_final_target(plan, session):
    tracker = PositionTracker(plan, [], session)

    partial = tracker.process(tick(112.5, 1))
    assert [(e.kind, e.quantity, e.pnl) for e in partial] == [("partial_target", 75, 937.5)]
    assert tracker.remaining == 75

    assert tracker.process(tick(113.0, 2)) == []

    final = tracker.process(tick(121.0, 3))
    assert [(e.kind, e.quantity) for e in final] == [("final_target", 75)]
    assert not tracker.open
    assert session.daily_loss.current_loss == 0.0


def test_single_lot_skips_partial_and_rides_to_final(plan, session):
    one_lot = plan.model_copy(update={"lots": 1, "quantity": 75, "total_risk": 750.0})
    tracker = PositionTracker(one_lot, [], session)

    assert tracker.process(tick(112.5, 1)) == []
    assert tracker.remaining == 75

    final = tracker.process(tick(121.0, 2))
    assert [(e.kind, e.quantity) for e in final] == [("final_target", 75)]
    assert not tracker.open


def test_closed_position_ignores_ticks(plan, session):
    tracker = PositionTracker(plan, [], session)
    tracker.process(tick(85.0))
    assert tracker.process(tick(130.0, 1)) == []


def test_stale_feed_is_reported(plan, session):
    tracker = PositionTracker(plan, [], session, stale_after=30.0)
    tracker.process(tick(101.0))
    events = tracker.process(tick(102.0, 45))

    assert [e.kind for e in events] == ["feed_lost"]
    assert not session.feed_connected
    assert "no tick for 45s" in session.reason(FEED_CONNECTED)


# ---------------------------------------------------------------------------
# Thread
# ---------------------------------------------------------------------------


def test_tracker_thread_publishes_exit_events(plan, session):
    tracker = PositionTracker(plan, [tick(105.0), tick(121.0, 1)], session)
    tracker.start()
    tracker.join(timeout=5)

    assert not tracker.running
    events = tracker.poll_exit_events()
    assert [e.kind for e in events] == ["final_target"]
    assert tracker.poll_exit_events() == []
    assert not session.position_open


def test_feed_ending_with_open_position_trips_kill_switch(plan, session):
    tracker = PositionTracker(plan, [tick(105.0)], session)
    tracker.start()
    tracker.join(timeout=5)

    assert [e.kind for e in tracker.poll_exit_events()] == ["feed_lost"]
    assert session.position_open
    outcome = KillSwitch().evaluate(session)
    assert outcome.detail["triggered"] == ["feed_disconnected_with_position"]


def test_stop_ends_the_thread(plan, session):
    def endless():
        while True:
            yield Tick(price=101.0)

    tracker = PositionTracker(plan, endless(), session)
    tracker.start()
    tracker.stop()
    tracker.join(timeout=5)
    assert not tracker.running
