import pytest

from phase_guard.catalogue import register_catalogue
from phase_guard.checklist import ChecklistGuard
from phase_guard.orchestrator import PhaseOrchestrator
from phase_guard.risk import RiskConverter
from phase_guard.session import DailyLossTracker, TradingSession
from phase_guard.tools import ToolRegistry
from support import TODAY, ScriptedPlanner, broker_handlers


@pytest.fixture
def handler_calls():
    return []


@pytest.fixture
def registry(handler_calls):
    reg = ToolRegistry()
    register_catalogue(reg, broker_handlers(handler_calls))
    return reg


@pytest.fixture
def session():
    return TradingSession(DailyLossTracker(5000.0, today=lambda: TODAY))


@pytest.fixture
def risk():
    return RiskConverter(account_balance=100_000, max_risk_percent=1.0, instrument="NIFTY")


@pytest.fixture
def make_orchestrator(registry, session, risk):
    def build(responses, **kwargs):
        planner = ScriptedPlanner(responses)
        orchestrator = PhaseOrchestrator(
            registry=kwargs.pop("registry", registry),
            planner=planner,
            risk=kwargs.pop("risk", risk),
            session=kwargs.pop("session", session),
            checklist=kwargs.pop("checklist", ChecklistGuard()),
            today=lambda: TODAY,
            **kwargs,
        )
        return orchestrator, planner

    return build
