# catalogue.py
# Standard broker tool descriptors.
#
# Only the contracts ship here. Handlers that talk to a real broker are
# injected by the caller through register_catalogue(), which keeps the
# broker client out of this package.

from collections.abc import Mapping
from typing import Any

from phase_guard.models import ToolDescriptor
from phase_guard.tools import RegistryError, ToolHandler, ToolRegistry

ORDER_GUARDS = ["RiskGuard", "ExecutionGuard"]

_ORDER_DERIVED = {
    "security_id": "executable_plan.security_id",
    "quantity": "executable_plan.quantity",
    "transaction_type": "executable_plan.transaction_type",
}

_ORDER_DEPENDENCIES = {
    "required_states": ["ORDER_EXECUTION"],
    "required_outputs": ["executable_plan", "final_quantity", "stoploss"],
    "required_guards": ORDER_GUARDS,
    "forbidden_after": ["position_opened", "order_failed"],
    "max_calls_per_trade": 1,
    "produces": ["order_id"],
}

_ORDER_INPUTS = {
    "transaction_type": {"type": "string", "enum": ["BUY", "SELL"]},
    "exchange_segment": {"type": "string"},
    "product_type": {"type": "string", "enum": ["INTRADAY", "MARGIN", "CNC"]},
    "order_type": {"type": "string", "enum": ["MARKET", "LIMIT"]},
    "security_id": {"type": "string"},
    "quantity": {"type": "integer", "minimum": 1},
    "price": {"type": "number", "minimum": 0, "description": "Required for LIMIT orders"},
}


CATALOGUE: list[dict[str, Any]] = [
    {
        "name": "broker.instrument.find",
        "category": "market",
        "description": "Finds an instrument and its trading metadata by symbol and exchange",
        "when_to_use": "When resolving symbols before analysis or trading",
        "when_not_to_use": "If security_id is already known from context",
        "risk_level": "none",
        "dependencies": {"produces": ["instrument"]},
        "inputs": {
            "properties": {
                "exchange_segment": {"type": "string", "description": "Exchange segment, e.g. IDX_I or NSE_FNO"},
                "symbol": {"type": "string", "description": "Symbol to find, e.g. NIFTY"},
            },
            "required": ["exchange_segment", "symbol"],
        },
        "outputs": {
            "properties": {
                "security_id": {"type": "string"},
                "exchange_segment": {"type": "string"},
                "instrument_type": {"type": "string"},
            }
        },
    },
    {
        "name": "broker.market.ltp",
        "category": "market",
        "description": "Fetches the latest traded price for an instrument",
        "when_to_use": "When a current price is needed for entry or stop-loss calculation",
        "risk_level": "none",
        "dependencies": {
            "required_outputs": ["instrument.security_id", "instrument.exchange_segment"],
            "derived_inputs": {
                "security_id": "instrument.security_id",
                "exchange_segment": "instrument.exchange_segment",
            },
        },
        "inputs": {
            "properties": {"exchange_segment": {"type": "string"}, "security_id": {"type": "string"}},
            "required": ["exchange_segment", "security_id"],
        },
        "outputs": {"properties": {"ltp": {"type": "number"}, "timestamp": {"type": "string"}}},
    },
    {
        "name": "broker.history.intraday",
        "category": "market.history",
        "description": "Fetches intraday OHLC candles for a given timeframe",
        "when_to_use": ["Multi-timeframe analysis", "Structure and momentum analysis"],
        "when_not_to_use": ["After analysis is complete", "During ORDER_EXECUTION or POSITION_TRACK"],
        "risk_level": "none",
        "dependencies": {
            "required_tools": ["broker.instrument.find"],
            "required_outputs": [
                "instrument.security_id",
                "instrument.exchange_segment",
                "instrument.instrument_type",
                "analysis_context.interval",
                "analysis_context.from_date",
                "analysis_context.to_date",
                "analysis_context.date_mode",
            ],
            "forbidden_states": ["ORDER_EXECUTION", "POSITION_TRACK"],
            "derived_inputs": {
                "security_id": "instrument.security_id",
                "exchange_segment": "instrument.exchange_segment",
                "instrument": "instrument.instrument_type",
                "interval": "analysis_context.interval",
                "from_date": "analysis_context.from_date",
                "to_date": "analysis_context.to_date",
            },
            "date_constraints": {
                "LIVE": {"to_date": "TODAY", "from_date": "LAST_TRADING_DAY_BEFORE"},
                "HISTORICAL": {"from_date": "<= to_date", "must_be_trading_days": True},
            },
            "produces": ["intraday_candles"],
        },
        "inputs": {
            "properties": {
                "security_id": {"type": "string"},
                "exchange_segment": {"type": "string"},
                "instrument": {"type": "string", "enum": ["INDEX", "EQUITY", "FUT", "OPT"]},
                "interval": {"type": "string", "enum": ["1", "5", "15", "25", "60"]},
                "from_date": {"type": "string", "description": "YYYY-MM-DD, a trading day"},
                "to_date": {"type": "string", "description": "YYYY-MM-DD, today in LIVE mode"},
            },
            "required": ["security_id", "exchange_segment", "instrument", "interval", "from_date", "to_date"],
        },
        "outputs": {
            "properties": {
                "candles": {"type": "array"},
                "interval": {"type": "string"},
                "complete": {"type": "boolean", "description": "True if the last candle is closed"},
            },
            "required": ["candles", "interval", "complete"],
        },
        "safety_rules": ["Never use the last candle if complete=false"],
    },
    {
        "name": "broker.option.expiries",
        "category": "options",
        "description": "Fetches available expiry dates for an underlying",
        "when_to_use": "Before fetching an option chain",
        "risk_level": "none",
        "dependencies": {
            "required_tools": ["broker.instrument.find"],
            "required_outputs": ["instrument.security_id", "instrument.exchange_segment"],
            "derived_inputs": {
                "underlying_scrip": "instrument.security_id",
                "underlying_seg": "instrument.exchange_segment",
            },
            "produces": ["expiry_list"],
        },
        "inputs": {
            "properties": {
                "underlying_scrip": {"type": ["integer", "string"]},
                "underlying_seg": {"type": "string"},
            },
            "required": ["underlying_scrip", "underlying_seg"],
        },
        "outputs": {"type": "array"},
    },
    {
        "name": "broker.option.chain",
        "category": "options",
        "description": "Fetches the option chain for an expiry with strikes, premiums and greeks",
        "when_to_use": "Strike selection and IV analysis before entry",
        "when_not_to_use": "After entry execution",
        "risk_level": "none",
        "dependencies": {
            "required_tools": ["broker.instrument.find", "broker.option.expiries"],
            "required_outputs": ["instrument.security_id", "instrument.exchange_segment", "expiry_list"],
            "derived_inputs": {
                "underlying_scrip": "instrument.security_id",
                "underlying_seg": "instrument.exchange_segment",
                "expiry": "expiry_list[0]",
            },
            "produces": ["option_chain"],
        },
        "inputs": {
            "properties": {
                "underlying_scrip": {"type": ["integer", "string"]},
                "underlying_seg": {"type": "string"},
                "expiry": {"type": "string", "description": "Defaults to the nearest expiry"},
            },
            "required": ["underlying_scrip", "underlying_seg"],
        },
        "outputs": {"properties": {"contracts": {"type": "array"}, "spot_price": {"type": "number"}}},
        "safety_rules": ["Only the nearest expiry is allowed for intraday"],
    },
    {
        "name": "broker.funds.balance",
        "category": "account",
        "description": "Fetches available margin and balance",
        "when_to_use": "Before placing any order, to check available funds",
        "risk_level": "none",
        "dependencies": {"produces": ["available_capital"]},
        "outputs": {
            "properties": {
                "available_balance": {"type": "number"},
                "used_margin": {"type": "number"},
                "total_balance": {"type": "number"},
            }
        },
    },
    {
        "name": "broker.positions.list",
        "category": "account",
        "description": "Fetches current open positions",
        "when_to_use": "When checking current exposure or before placing new orders",
        "risk_level": "none",
        "dependencies": {"produces": ["open_positions"]},
        "outputs": {"type": "array"},
    },
    {
        "name": "broker.order.place",
        "category": "trade",
        "description": "Places a standard order",
        "when_to_use": "Only after risk validation with a stop-loss planned",
        "when_not_to_use": "Without SL/TP planned or during uncertainty",
        "risk_level": "high",
        "side_effects": ["REAL MONEY ORDER"],
        "dependencies": {**_ORDER_DEPENDENCIES, "derived_inputs": dict(_ORDER_DERIVED)},
        "inputs": {
            "properties": dict(_ORDER_INPUTS),
            "required": ["transaction_type", "exchange_segment", "product_type", "order_type", "security_id", "quantity"],
        },
        "outputs": {"properties": {"order_id": {"type": "string"}, "status": {"type": "string"}}},
        "safety_rules": [
            "Never place order without stoploss planned",
            "Never exceed max position size",
        ],
    },
    {
        "name": "broker.super.place",
        "category": "trade",
        "description": "Places a super order with built-in stop-loss and target legs",
        "when_to_use": "Preferred execution for options buying with SL/TP",
        "when_not_to_use": "If the stop-loss cannot be defined",
        "risk_level": "high",
        "side_effects": ["REAL MONEY ORDER WITH LEGS"],
        "dependencies": {
            **_ORDER_DEPENDENCIES,
            "derived_inputs": {
                **_ORDER_DERIVED,
                "price": "executable_plan.entry_price",
                "stop_loss_price": "executable_plan.stop_loss",
                "target_price": "executable_plan.final_target.price",
            },
        },
        "inputs": {
            "properties": {
                **_ORDER_INPUTS,
                "transaction_type": {"type": "string", "enum": ["BUY"]},
                "target_price": {"type": "number", "minimum": 0},
                "stop_loss_price": {"type": "number", "minimum": 0},
            },
            "required": [
                "transaction_type",
                "exchange_segment",
                "product_type",
                "order_type",
                "security_id",
                "quantity",
                "price",
                "stop_loss_price",
            ],
        },
        "outputs": {"properties": {"order_id": {"type": "string"}, "order_status": {"type": "string"}}},
        "safety_rules": [
            "Stoploss is mandatory",
            "Verify funds before placing",
        ],
    },
]


def catalogue_descriptors() -> list[ToolDescriptor]:
    return [ToolDescriptor.model_validate(entry) for entry in CATALOGUE]


def register_catalogue(registry: ToolRegistry, handlers: Mapping[str, ToolHandler]) -> list[str]:
    """
    Register every catalogue tool that has a handler.

    Handlers for names outside the catalogue are a wiring error.
    """
    descriptors = {d.name: d for d in catalogue_descriptors()}
    unknown = sorted(set(handlers) - set(descriptors))
    if unknown:
        raise RegistryError(f"Handlers for unknown tools: {', '.join(unknown)}")

    registered: list[str] = []
    for name, descriptor in descriptors.items():
        if name in handlers:
            registry.register(descriptor, handlers[name])
            registered.append(name)
    return registered
