import json
from unittest.mock import MagicMock

import pytest

from phase_guard.catalogue import register_catalogue
from phase_guard.models import PhaseStatus, TierAssessment
from phase_guard.session import INVALID_STATE_TRANSITION, UNEXPECTED_PLANNER_OUTPUT
from phase_guard.state_machine import Phase, StateMachine
from phase_guard.tools import ToolRegistry
from phase_guard.tracker import Tick
from support import OPTION_ID, broker_handlers, final, tool_batch, tool_call, trade_plan

ANALYSIS = [
    tool_call("broker.instrument.find", exchange_segment="IDX_I", symbol="NIFTY"),
    tool_call("broker.history.intraday"),
    final(trade_plan()),
]
VALIDATION = [
    tool_batch("broker.funds.balance", "broker.positions.list"),
    final({"security_id": OPTION_ID}),
]
EXECUTION = [
    tool_call("broker.order.place", exchange_segment="NSE_FNO", product_type="INTRADAY", order_type="MARKET"),
    final({"order_id": "ORD-1"}),
]

OPEN_MARKET = {"market_open": True, "broker_authenticated": True}


def called(handler_calls, name):
    return [args for tool, args in handler_calls if tool == name]


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


def test_full_run_places_one_order(make_orchestrator, handler_calls):
    orchestrator, planner = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION)

    result = orchestrator.run("Trade NIFTY options intraday")

    assert result.final_status == "executed"
    assert not result.halted
    assert orchestrator.state_machine.state == Phase.COMPLETE
    assert planner.responses == []

    assert list(result.phases) == ["market_analysis", "plan_validation", "order_execution", "position_track"]
    assert result.phases["plan_validation"].status == PhaseStatus.APPROVED
    assert result.phases["plan_validation"].reason == "Trade plan validated successfully"
    assert result.phases["order_execution"].status == PhaseStatus.COMPLETED

    plan = result.executable_plan
    assert plan.security_id == OPTION_ID
    assert plan.stop_loss == 85.0
    assert plan.quantity == 75

    orders = called(handler_calls, "broker.order.place")
    assert len(orders) == 1
    assert orders[0]["security_id"] == OPTION_ID
    assert orders[0]["quantity"] == 75
    assert orders[0]["transaction_type"] == "BUY"
    assert result.order_receipt["order_id"] == "ORD-1"
    assert result.final_output["order_id"] == "ORD-1"


def test_run_result_serializes(make_orchestrator):
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION)
    out = orchestrator.run("Trade NIFTY").to_dict()

    encoded = json.loads(json.dumps(out, default=str))
    assert encoded["final_status"] == "executed"
    assert encoded["executable_plan"]["quantity"] == 75
    assert encoded["phases"]["plan_validation"]["status"] == "approved"
    assert "halt_reason" not in encoded


def test_analysis_dates_are_controller_owned(make_orchestrator, handler_calls):
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION)
    orchestrator.run("Trade NIFTY")

    history = called(handler_calls, "broker.history.intraday")[0]
    assert history["from_date"] == "2026-01-05"
    assert history["to_date"] == "2026-01-06"


def test_position_tracker_started_after_execution(make_orchestrator, session):
    feed = MagicMock(return_value=[Tick(price=96.0), Tick(price=116.0)])
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION, feed_factory=feed)

    result = orchestrator.run("Trade NIFTY")
    orchestrator.tracker.join(timeout=5)

    assert result.final_status == "executed"
    feed.assert_called_once_with(result.executable_plan)
    events = orchestrator.poll_exit_events()
    assert [(e.kind, e.quantity) for e in events] == [("final_target", 75)]
    assert not session.position_open


# ---------------------------------------------------------------------------
# Validation gate
# ---------------------------------------------------------------------------


def test_risk_rejection_never_reaches_execution(make_orchestrator, handler_calls):
    plan = trade_plan(
        stop_loss_logic="below 92",
        candidates=[{"security_id": OPTION_ID, "option_type": "CE", "last_price": 105.5}],
    )
    orchestrator, planner = make_orchestrator(ANALYSIS[:2] + [final(plan)] + VALIDATION + EXECUTION)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "validation_failed"
    assert result.phases["plan_validation"].status == PhaseStatus.REJECTED
    assert result.phases["plan_validation"].reason == "Risk per lot (1012.50) exceeds max risk per trade (1000.00)"
    assert "order_execution" not in result.phases
    assert result.executable_plan is None
    assert called(handler_calls, "broker.order.place") == []
    assert orchestrator.state_machine.state == Phase.REJECTED
    # Execution responses were never requested.
    assert len(planner.responses) == len(EXECUTION)


def test_unknown_candidate_is_rejected(make_orchestrator, handler_calls):
    validation = [VALIDATION[0], final({"security_id": "OPT-99999-PE"})]
    orchestrator, _ = make_orchestrator(ANALYSIS + validation)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "validation_failed"
    assert result.phases["plan_validation"].reason == "Candidate OPT-99999-PE is not in the trade plan"
    assert called(handler_calls, "broker.order.place") == []


def test_funds_must_be_fetched_before_approval(make_orchestrator):
    orchestrator, _ = make_orchestrator(ANALYSIS + [final({"security_id": OPTION_ID})])
    result = orchestrator.run("Trade NIFTY")
    assert result.final_status == "validation_failed"
    assert result.phases["plan_validation"].reason == "Available capital unknown: fetch funds before validation"


# ---------------------------------------------------------------------------
# No-trade exits
# ---------------------------------------------------------------------------


def test_cascade_without_opportunity_ends_run(make_orchestrator, handler_calls):
    directional, tactical = MagicMock(), MagicMock()
    orchestrator, planner = make_orchestrator([], tier_evaluators=[lambda higher: None, directional, tactical])

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "no_trade"
    assert result.phases["market_analysis"].reason == "No trade: structural tier reported no opportunity"
    assert orchestrator.state_machine.state == Phase.COMPLETE
    assert planner.calls == []
    assert handler_calls == []
    directional.assert_not_called()
    tactical.assert_not_called()


def test_cascade_tiers_are_binding(make_orchestrator):
    bearish = [
        lambda higher: TierAssessment(tier="structural", regime="TREND", direction="BEARISH"),
        lambda higher: TierAssessment(tier="directional", regime="TREND", direction="BEARISH"),
        lambda higher: TierAssessment(tier="tactical", direction="BEARISH", trigger="5m close below VWAP"),
    ]
    orchestrator, _ = make_orchestrator(ANALYSIS, tier_evaluators=bearish)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "no_trade"
    assert "plan bias BULLISH disagrees with cascade bias BEARISH" in result.phases["market_analysis"].reason


def test_no_trade_bias(make_orchestrator, handler_calls):
    orchestrator, _ = make_orchestrator(ANALYSIS[:2] + [final(trade_plan(bias="NO_TRADE"))])
    result = orchestrator.run("Trade NIFTY")
    assert result.final_status == "no_trade"
    assert orchestrator.state_machine.state == Phase.COMPLETE


def test_closed_market_is_no_trade(make_orchestrator):
    orchestrator, planner = make_orchestrator(
        [], status_provider=lambda: {**OPEN_MARKET, "market_open": False}
    )
    result = orchestrator.run("Trade NIFTY")
    assert result.final_status == "no_trade"
    assert planner.calls == []


def test_unauthenticated_broker_halts(make_orchestrator):
    orchestrator, planner = make_orchestrator([], status_provider=lambda: {**OPEN_MARKET, "broker_authenticated": False})
    result = orchestrator.run("Trade NIFTY")
    assert result.final_status == "halted"
    assert result.halt_reason.startswith("Checklist global_precheck: broker_authenticated")
    assert planner.calls == []


# ---------------------------------------------------------------------------
# Execution gate
# ---------------------------------------------------------------------------


def test_existing_position_blocks_order(make_orchestrator, handler_calls):
    registry = ToolRegistry()
    positions = [{"security_id": OPTION_ID, "quantity": 75}]
    register_catalogue(registry, broker_handlers(handler_calls, {"broker.positions.list": positions}))
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION, registry=registry)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "halted"
    assert "no_duplicate_position" in result.halt_reason
    assert called(handler_calls, "broker.order.place") == []


def test_planner_cannot_change_order_size(make_orchestrator, handler_calls):
    execution = [
        tool_call(
            "broker.order.place",
            exchange_segment="NSE_FNO",
            product_type="INTRADAY",
            order_type="MARKET",
            quantity=50,
        ),
        final({"order_id": "made-up"}),
    ]
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + execution)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "execution_failed"
    assert result.phases["order_execution"].reason.startswith("No order id returned")
    rejection = result.phases["order_execution"].trace[0].result
    assert rejection.error == "Admission refused: quantity 50 does not match plan quantity 75"
    assert called(handler_calls, "broker.order.place") == []


def test_second_order_in_same_trade_is_refused(make_orchestrator, handler_calls):
    execution = [EXECUTION[0], EXECUTION[0]]
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + execution)

    result = orchestrator.run("Trade NIFTY")

    assert len(called(handler_calls, "broker.order.place")) == 1
    second = result.phases["order_execution"].trace[1].result
    assert second.status == "rejected"
    assert "Tool call limit exceeded" in second.error
    assert result.final_status == "executed"


ORDER_TYPE = {"exchange_segment": "NSE_FNO", "product_type": "INTRADAY", "order_type": "MARKET"}


def order_batch(*calls):
    return {"action": "tool_batch", "calls": [{"tool_name": name, "tool_args": args} for name, args in calls]}


@pytest.mark.parametrize(
    "calls",
    [
        [("broker.order.place", ORDER_TYPE), ("broker.super.place", ORDER_TYPE)],
        [("broker.order.place", ORDER_TYPE), ("broker.order.place", {**ORDER_TYPE, "product_type": "MARGIN"})],
    ],
)
def test_orders_in_one_batch_are_all_refused(make_orchestrator, handler_calls, session, calls):
    execution = [order_batch(*calls), final({"order_id": "made-up"})]
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + execution)

    result = orchestrator.run("Trade NIFTY")

    assert called(handler_calls, "broker.order.place") == []
    assert called(handler_calls, "broker.super.place") == []
    refused = [entry.result for entry in result.phases["order_execution"].trace if entry.result is not None]
    assert [r.status for r in refused] == ["rejected", "rejected"]
    assert all(r.error == "Order-placing tools cannot be batched" for r in refused)
    assert result.final_status == "execution_failed"
    assert not session.position_open


def test_null_order_fields_are_filled_from_plan(make_orchestrator, handler_calls):
    execution = [
        tool_call("broker.order.place", security_id=None, transaction_type=None, quantity=None, **ORDER_TYPE),
        final({"order_id": "ORD-1"}),
    ]
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + execution)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "executed"
    [order] = called(handler_calls, "broker.order.place")
    assert order["security_id"] == OPTION_ID
    assert order["transaction_type"] == "BUY"
    assert order["quantity"] == 75


def test_placed_order_marks_position_open_without_a_feed(make_orchestrator, handler_calls, session):
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION + ANALYSIS + VALIDATION)

    first = orchestrator.run("Trade NIFTY")
    assert first.final_status == "executed"
    assert session.position_open
    assert session._order_locks == {}

    second = orchestrator.run("Trade NIFTY")
    assert second.final_status == "halted"
    assert second.halt_reason == (
        "Checklist order_execution: no_duplicate_position: session already holds an open position"
    )
    assert len(called(handler_calls, "broker.order.place")) == 1


def test_broker_failure_is_execution_failed(make_orchestrator, handler_calls):
    registry = ToolRegistry()
    register_catalogue(registry, broker_handlers(handler_calls, {"broker.order.place": RuntimeError("rejected by RMS")}))
    orchestrator, _ = make_orchestrator(ANALYSIS + VALIDATION + EXECUTION, registry=registry)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "execution_failed"
    assert "RuntimeError: rejected by RMS" in result.phases["order_execution"].reason
    assert orchestrator.state_machine.state == Phase.REJECTED


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------


def test_kill_switch_mid_validation_halts(make_orchestrator, session, handler_calls):
    def lose_the_day(task, schema, context):
        session.daily_loss.add_loss(5000.0)
        return VALIDATION[0]

    orchestrator, planner = make_orchestrator(ANALYSIS + [lose_the_day] + VALIDATION[1:] + EXECUTION)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "halted"
    assert result.halted
    assert "max_daily_loss_breached" in result.halt_reason
    assert result.phases["plan_validation"].status == PhaseStatus.HALTED
    assert called(handler_calls, "broker.funds.balance") == []
    assert called(handler_calls, "broker.order.place") == []
    assert orchestrator.state_machine.state == Phase.REJECTED


def test_breached_daily_loss_blocks_new_runs(make_orchestrator, session):
    session.daily_loss.add_loss(5000.0)
    orchestrator, planner = make_orchestrator(ANALYSIS)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "halted"
    assert planner.calls == []
    assert orchestrator.state_machine.state == Phase.IDLE


def test_unexpected_planner_output_is_run_fatal(make_orchestrator, session):
    orchestrator, _ = make_orchestrator([final({"bias": "SIDEWAYS"})] + ANALYSIS)

    first = orchestrator.run("Trade NIFTY")
    assert first.final_status == "halted"
    assert session.flag(UNEXPECTED_PLANNER_OUTPUT)

    second = orchestrator.run("Trade NIFTY")
    assert second.final_status == "halted"
    assert second.phases == {}


def test_invalid_transition_halts(make_orchestrator, session):
    machine = StateMachine()
    machine.transition(Phase.MARKET_ANALYSIS)
    orchestrator, planner = make_orchestrator(ANALYSIS, state_machine=machine)

    result = orchestrator.run("Trade NIFTY")

    assert result.final_status == "halted"
    assert result.halt_reason.startswith("Invalid transition: MARKET_ANALYSIS -> MARKET_ANALYSIS")
    assert session.flag(INVALID_STATE_TRANSITION)
    assert planner.calls == []


def test_orchestrator_can_run_again_after_a_terminal_phase(make_orchestrator):
    no_trade = ANALYSIS[:2] + [final(trade_plan(bias="NO_TRADE"))]
    orchestrator, _ = make_orchestrator(no_trade + no_trade)
    assert orchestrator.run("Trade NIFTY").final_status == "no_trade"
    assert orchestrator.run("Trade NIFTY").final_status == "no_trade"
