import os

import pytest

from phase_guard.checklist import ChecklistGuard, ConfigError, KillSwitch, load_checklist
from phase_guard.models import TradePlan
from phase_guard.session import (
    DUPLICATE_EXECUTION,
    FEED_CONNECTED,
    POSITION_OPEN,
    UNEXPECTED_PLANNER_OUTPUT,
)
from support import trade_plan

GOOD_FACTS = {"market_open": True, "broker_authenticated": True, "feed_connected": True, "in_cooldown": False}

MINIMAL = """\
global_precheck:
  - id: market_open
    rejection_action: NO_TRADE
kill_conditions:
  - max_daily_loss_breached
"""


@pytest.fixture
def guard():
    return ChecklistGuard()


# ---------------------------------------------------------------------------
# Bundled checklist
# ---------------------------------------------------------------------------


def test_global_precheck_passes(guard):
    report = guard.run("global_precheck", GOOD_FACTS)
    assert report.passed
    assert report.action is None


def test_market_closed_is_no_trade(guard):
    report = guard.run("global_precheck", {**GOOD_FACTS, "market_open": False})
    assert not report.passed
    assert report.action == "NO_TRADE"
    assert not report.halts
    assert report.reason == "market_open: market is closed"


def test_unauthenticated_broker_halts(guard):
    report = guard.run("global_precheck", {**GOOD_FACTS, "broker_authenticated": False})
    assert report.action == "HALT_SYSTEM"
    assert report.halts


def test_every_failure_is_listed(guard):
    report = guard.run("global_precheck", {"market_open": False, "in_cooldown": True})
    assert [f.id for f in report.failures] == ["market_open", "broker_authenticated", "feed_connected", "not_in_cooldown"]
    assert report.action == "NO_TRADE"


def test_analysis_post_checks_accept_a_consistent_plan(guard):
    facts = {"trade_plan": TradePlan.model_validate(trade_plan())}
    assert guard.run("market_analysis", facts, stage="post").passed


def test_analysis_post_checks_flag_bad_plan(guard):
    plan = TradePlan.model_validate(trade_plan(mode="EQUITY_SWING", bias="NO_TRADE"))
    report = guard.run("market_analysis", {"trade_plan": plan}, stage="post")
    ids = [f.id for f in report.failures]
    assert ids == ["direction_decided", "alignment_with_higher_tier", "trade_plan.mode"]
    assert report.failures[-1].detail == "'EQUITY_SWING' not in ['OPTIONS_INTRADAY']"


def test_stage_filter(guard):
    facts = {
        "executable_plan": {"security_id": "OPT-1"},
        "open_positions": [{"security_id": "OPT-1", "quantity": 75}],
    }
    pre = guard.run("order_execution", facts, stage="pre")
    assert [f.id for f in pre.failures] == ["no_duplicate_position"]
    assert pre.action == "STOP_AND_ALERT"

    post = guard.run("order_execution", {**facts, "order_id": "1"}, stage="post")
    assert post.passed


def test_open_session_position_blocks_new_order(guard):
    report = guard.run("order_execution", {"position_open": True, "open_positions": []}, stage="pre")
    assert [f.id for f in report.failures] == ["no_duplicate_position"]
    assert report.failures[0].detail == "session already holds an open position"


def test_optional_entries_are_warnings(guard):
    facts = {"executable_plan": {"stop_loss": 85.0, "entry_price": 95.25, "lots": 1, "lot_size": 75, "quantity": 75}}
    report = guard.run("plan_validation", facts, stage="post")
    assert report.passed
    assert report.warnings == ["available_capital: missing"]


def test_plan_validation_predicates(guard):
    facts = {
        "executable_plan": {"stop_loss": 100.0, "entry_price": 95.25, "lots": 9, "lot_size": 75, "quantity": 75},
        "available_capital": 50000.0,
    }
    report = guard.run("plan_validation", facts, stage="post")
    assert [f.id for f in report.failures] == ["stop_loss_numeric", "lots_within_cap", "quantity_matches_lots"]


def test_unknown_section_is_empty(guard):
    assert guard.run("no_such_phase", {}).passed


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_custom_checklist_with_extra_fields(tmp_path):
    path = tmp_path / "checklist.yaml"
    path.write_text(
        "plan_validation:\n"
        "  - id: lots_within_cap\n"
        "    max_lots: 2\n"
        "    rejection_action: REJECT\n"
    )
    guard = ChecklistGuard(path)
    report = guard.run("plan_validation", {"executable_plan": {"lots": 3}}, stage="post")
    assert report.reason == "lots_within_cap: lots 3 outside 1..2"
    assert guard.document.kill_conditions == []


@pytest.mark.parametrize(
    "content, message",
    [
        ("global_precheck: [\n", "not valid YAML"),
        ("- market_open\n", "must be a mapping"),
        ("pre_market:\n  - id: x\n", "is invalid"),
        ("global_precheck:\n  - id: x\n    rejection_action: PANIC\n", "is invalid"),
        ("kill_conditions:\n  - solar_flare\n", "Unknown kill conditions: solar_flare"),
    ],
)
def test_malformed_checklists_raise_config_error(tmp_path, content, message):
    path = tmp_path / "checklist.yaml"
    path.write_text(content)
    with pytest.raises(ConfigError, match=message):
        load_checklist(path)


def test_missing_checklist_raises_config_error(tmp_path):
    with pytest.raises(ConfigError, match="Cannot read checklist"):
        ChecklistGuard(tmp_path / "absent.yaml")


def test_hot_reload_on_change(tmp_path):
    path = tmp_path / "checklist.yaml"
    path.write_text(MINIMAL)
    guard = ChecklistGuard(path)
    assert not guard.reload_if_changed()

    path.write_text(MINIMAL.replace("NO_TRADE", "HALT_SYSTEM"))
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert guard.reload_if_changed()
    assert guard.run("global_precheck", {"market_open": False}).action == "HALT_SYSTEM"


def test_bad_reload_raises_config_error(tmp_path):
    path = tmp_path / "checklist.yaml"
    path.write_text(MINIMAL)
    guard = ChecklistGuard(path)

    path.write_text("kill_conditions:\n  - solar_flare\n")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    with pytest.raises(ConfigError):
        guard.reload_if_changed()


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------


def test_clean_session_passes(guard, session):
    assert guard.kill_switch().evaluate(session).ok


def test_daily_loss_breach_is_fatal(guard, session):
    session.daily_loss.add_loss(5000.0)
    outcome = guard.kill_switch().evaluate(session)
    assert not outcome.ok
    assert outcome.fatal
    assert outcome.detail["triggered"] == ["max_daily_loss_breached"]


def test_feed_loss_only_matters_with_open_position(session):
    switch = KillSwitch()
    session.set_flag(FEED_CONNECTED, False)
    assert switch.evaluate(session).ok

    session.set_flag(POSITION_OPEN, True)
    assert switch.evaluate(session).detail["triggered"] == ["feed_disconnected_with_position"]


def test_every_triggered_condition_is_reported_with_reason(session):
    session.set_flag(DUPLICATE_EXECUTION, reason="repeated order")
    session.set_flag(UNEXPECTED_PLANNER_OUTPUT, reason="bad json")
    outcome = KillSwitch().evaluate(session)
    assert outcome.error == (
        "Kill switch: duplicate_execution_detected (repeated order); unexpected_planner_output (bad json)"
    )


def test_kill_switch_subset(session):
    session.set_flag(DUPLICATE_EXECUTION)
    assert KillSwitch(["max_daily_loss_breached"]).evaluate(session).ok


def test_unknown_kill_condition():
    with pytest.raises(ConfigError):
        KillSwitch(["solar_flare"])
