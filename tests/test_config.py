from phase_guard.config import load_settings
from phase_guard.orchestrator import build_orchestrator
from phase_guard.state_machine import Phase
from support import ScriptedPlanner


def test_defaults():
    settings = load_settings()
    assert settings.analysis_max_iterations == 8
    assert settings.validation_timeout == 10.0
    assert settings.date_mode == "LIVE"
    assert settings.dry_run is True
    assert settings.sl_fallback == "default"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PHASE_GUARD_ACCOUNT_BALANCE", "250000")
    monkeypatch.setenv("PHASE_GUARD_INSTRUMENT", "BANKNIFTY")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    settings = load_settings()
    assert settings.account_balance == 250_000
    assert settings.instrument == "BANKNIFTY"
    assert settings.planner_api_key == "sk-test"


def test_build_orchestrator_applies_settings(registry):
    settings = load_settings(
        instrument="BANKNIFTY",
        execution_max_iterations=1,
        analysis_timeout=30.0,
        daily_loss_cap=2500.0,
        max_position_size=30,
    )
    orchestrator = build_orchestrator(settings, registry, planner=ScriptedPlanner([]))

    assert orchestrator.risk.lot_multiplier == 15
    assert orchestrator.session.daily_loss.cap == 2500.0
    assert orchestrator.state_machine.capability(Phase.ORDER_EXECUTION).max_iterations == 1
    assert orchestrator.state_machine.capability(Phase.MARKET_ANALYSIS).timeout == 30.0
    assert orchestrator.state_machine.capability(Phase.MARKET_ANALYSIS).allowed_tools
    assert orchestrator.date_mode == "LIVE"
