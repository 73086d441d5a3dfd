# support.py
# Shared doubles and payloads for the test suite.

import copy
from datetime import date

# A Tuesday with no exchange holiday; the previous trading day is Monday.
TODAY = date(2026, 1, 6)

OPTION_ID = "OPT-24500-CE"

TRADE_PLAN = {
    "mode": "OPTIONS_INTRADAY",
    "instrument": "NIFTY",
    "bias": "BULLISH",
    "tiers": [
        {"tier": "structural", "regime": "TREND", "direction": "BULLISH"},
        {"tier": "directional", "regime": "TREND", "direction": "BULLISH"},
        {"tier": "tactical", "direction": "BULLISH", "trigger": "5m close above VWAP"},
    ],
    "candidates": [
        {"security_id": OPTION_ID, "strike": 24500, "option_type": "CE", "last_price": 95.25},
    ],
    "stop_loss_logic": "below 85",
    "take_profit_logic": "",
    "invalidations": ["15m close below swing low"],
}


class ScriptedPlanner:
    """
    Planner double that replays a fixed list of responses.

    Items may be dicts (returned as-is), exceptions (raised), or callables
    taking (task, schema, context) whose return value is the response.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def plan(self, task, schema, context):
        self.calls.append({"task": task, "schema": schema, "context": context})
        if not self.responses:
            raise AssertionError("ScriptedPlanner ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(task, schema, context)
        return copy.deepcopy(item)


def tool_call(name, **args):
    return {"action": "tool_call", "tool_name": name, "tool_args": args}


def final(output=None, stop_reason=None):
    return {"action": "final", "final_output": output, "stop_reason": stop_reason}


def trade_plan(**overrides):
    plan = copy.deepcopy(TRADE_PLAN)
    plan.update(overrides)
    return plan


def broker_handlers(calls, overrides=None):
    payloads = {
        "broker.instrument.find": {"security_id": "13", "exchange_segment": "IDX_I", "instrument_type": "INDEX"},
        "broker.market.ltp": {"ltp": 24510.5},
        "broker.history.intraday": {"candles": [{"ts": 1, "open": 1, "high": 2, "low": 1, "close": 2}], "interval": "5", "complete": True},
        "broker.option.expiries": ["2026-01-08", "2026-01-15"],
        "broker.option.chain": {"contracts": [], "spot_price": 24510.5},
        "broker.funds.balance": {"available_balance": 50000.0, "used_margin": 0.0},
        "broker.positions.list": [],
        "broker.order.place": {"order_id": "ORD-1", "status": "TRANSIT"},
        "broker.super.place": {"order_id": "SUP-1", "order_status": "TRANSIT"},
    }
    payloads.update(overrides or {})

    def make(name):
        def handler(args):
            calls.append((name, dict(args)))
            payload = payloads[name]
            if isinstance(payload, Exception):
                raise payload
            return payload(args) if callable(payload) else copy.deepcopy(payload)

        return handler

    return {name: make(name) for name in payloads}


def tool_batch(*names):
    return {"action": "tool_batch", "calls": [{"tool_name": name} for name in names]}


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
