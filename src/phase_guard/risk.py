# risk.py
# Risk converter: qualitative exit logic -> numeric prices and lot size.
#
# Pure functions over the constructor parameters. No I/O, no clock, no
# mutable state. Every failure is a rejection value, never an exception.
# Long options buying only: the stop sits below entry, targets above it.

import math
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from phase_guard.models import ExecutablePlan, StrikeCandidate, TargetLevel, TradePlan

MAX_LOTS_PER_TRADE = 6
MIN_PARTIAL_RR = 1.2
MIN_FINAL_RR = 2.0
DEFAULT_SL_PERCENT = 0.20
PRICE_TOLERANCE = 0.01

_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_BELOW = re.compile(r"below\s+(\d+(?:\.\d+)?)")
_ABOVE = re.compile(r"above\s+(\d+(?:\.\d+)?)")
_SWING_LOW = re.compile(r"swing\s+low")
_PREV_DAY_HIGH = re.compile(r"previous\s+day\s+high")

Status = Literal["approved", "rejected"]
FallbackPolicy = Literal["default", "reject"]


class InstrumentSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    lot_size: int = Field(..., ge=1)
    max_sl_percent: float = Field(..., gt=0, le=1)


INSTRUMENTS: dict[str, InstrumentSpec] = {
    "NIFTY": InstrumentSpec(name="NIFTY", lot_size=75, max_sl_percent=0.30),
    "BANKNIFTY": InstrumentSpec(name="BANKNIFTY", lot_size=15, max_sl_percent=0.30),
    "FINNIFTY": InstrumentSpec(name="FINNIFTY", lot_size=50, max_sl_percent=0.30),
    "SENSEX": InstrumentSpec(name="SENSEX", lot_size=20, max_sl_percent=0.25),
}


def instrument_spec(name: str, lot_size: int | None = None, max_sl_percent: float | None = None) -> InstrumentSpec:
    """Bundled spec for ``name`` with optional overrides. Unknown names get NIFTY defaults."""
    key = name.upper()
    base = INSTRUMENTS.get(key, InstrumentSpec(name=key, lot_size=75, max_sl_percent=0.30))
    return InstrumentSpec(
        name=key,
        lot_size=lot_size or base.lot_size,
        max_sl_percent=max_sl_percent or base.max_sl_percent,
    )


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------


class LotSizing(BaseModel):
    status: Status
    reason: str
    lots: int = 0
    risk_per_lot: float = 0.0
    total_risk: float = 0.0


class StopLossLevel(BaseModel):
    status: Status
    reason: str
    price: float | None = None
    percent: float | None = None
    source: str = "parsed"


class TargetLevels(BaseModel):
    status: Status
    reason: str
    partial: TargetLevel | None = None
    final: TargetLevel | None = None


class RiskDecision(BaseModel):
    status: Status
    reason: str
    stop_loss: StopLossLevel | None = None
    targets: TargetLevels | None = None
    sizing: LotSizing | None = None
    quantity: int = 0
    required_margin: float = 0.0

    @property
    def approved(self) -> bool:
        return self.status == "approved"


def _finite_positive(*values: Any) -> bool:
    for value in values:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return False
        if not math.isfinite(value) or value <= 0:
            return False
    return True


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------


class RiskConverter:
    """
    Converts a TradePlan's qualitative exits into an ExecutablePlan.

    Parameterised by account balance, max risk percent per trade and the
    instrument, which fixes the lot multiplier and the stop-loss cap.
    """

    def __init__(
        self,
        account_balance: float,
        max_risk_percent: float = 1.0,
        instrument: InstrumentSpec | str = "NIFTY",
        max_lots: int = MAX_LOTS_PER_TRADE,
        sl_fallback: FallbackPolicy = "default",
        default_sl_percent: float = DEFAULT_SL_PERCENT,
    ) -> None:
        self.account_balance = float(account_balance)
        self.max_risk_fraction = float(max_risk_percent) / 100.0
        self.instrument = instrument if isinstance(instrument, InstrumentSpec) else instrument_spec(instrument)
        self.max_lots = max_lots
        self.sl_fallback = sl_fallback
        self.default_sl_percent = default_sl_percent

    @property
    def lot_multiplier(self) -> int:
        return self.instrument.lot_size

    @property
    def max_risk_amount(self) -> float:
        return self.account_balance * self.max_risk_fraction

    # ------------------------------------------------------------------
    # Lot size
    # ------------------------------------------------------------------

    def lot_size(self, entry_price: float, stop_loss_price: float) -> LotSizing:
        if not _finite_positive(entry_price, stop_loss_price):
            return LotSizing(
                status="rejected",
                reason=f"Invalid prices: entry={entry_price!r}, stop={stop_loss_price!r}",
            )
        if stop_loss_price >= entry_price:
            return LotSizing(
                status="rejected",
                reason=f"Invalid SL: stop_loss_price ({stop_loss_price}) must be less than entry_price ({entry_price})",
            )

        risk_per_lot = (entry_price - stop_loss_price) * self.lot_multiplier
        max_risk = self.max_risk_amount
        allowed = math.floor(max_risk / risk_per_lot) if max_risk > 0 else 0

        if allowed < 1:
            return LotSizing(
                status="rejected",
                reason=f"Risk per lot ({risk_per_lot:.2f}) exceeds max risk per trade ({max_risk:.2f})",
                risk_per_lot=round(risk_per_lot, 2),
                total_risk=round(risk_per_lot, 2),
            )

        lots = min(allowed, self.max_lots)
        total = lots * risk_per_lot
        return LotSizing(
            status="approved",
            reason=f"Calculated {lots} lot(s) with risk {total:.2f} per trade",
            lots=lots,
            risk_per_lot=round(risk_per_lot, 2),
            total_risk=round(total, 2),
        )

    # ------------------------------------------------------------------
    # Stop loss
    # ------------------------------------------------------------------

    def convert_stop_loss(
        self, logic: str | None, current_price: float, swing_low: float | None = None
    ) -> StopLossLevel:
        if not _finite_positive(current_price):
            return StopLossLevel(status="rejected", reason=f"Invalid current price: {current_price!r}")

        text = (logic or "").lower()
        source = "parsed"
        if match := _PERCENT.search(text):
            price = current_price * (1 - float(match.group(1)) / 100.0)
        elif match := _BELOW.search(text):
            price = float(match.group(1))
        elif _SWING_LOW.search(text) and swing_low is not None:
            price = float(swing_low)
        elif self.sl_fallback == "reject":
            return StopLossLevel(status="rejected", reason=f"Stop-loss logic could not be converted: {logic!r}")
        else:
            price = current_price * (1 - self.default_sl_percent)
            source = "default"

        if price <= 0 or price >= current_price:
            return StopLossLevel(
                status="rejected",
                reason=f"Stop-loss ({price:.2f}) must be below the current price ({current_price:.2f})",
                price=round(price, 2),
                source=source,
            )

        percent = (current_price - price) / current_price
        cap = self.instrument.max_sl_percent
        if percent > cap:
            clamped = current_price * (1 - cap)
            return StopLossLevel(
                status="rejected",
                reason=f"SL percentage ({percent * 100:.2f}%) exceeds maximum allowed ({cap * 100:.2f}%)",
                price=round(clamped, 2),
                percent=percent,
                source=source,
            )

        return StopLossLevel(
            status="approved",
            reason=f"Converted SL logic to price {price:.2f} ({percent * 100:.2f}% SL)",
            price=round(price, 2),
            percent=percent,
            source=source,
        )

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def convert_targets(
        self,
        logic: str | None,
        entry_price: float,
        stop_loss_price: float,
        previous_day_high: float | None = None,
    ) -> TargetLevels:
        if not _finite_positive(entry_price, stop_loss_price) or stop_loss_price >= entry_price:
            return TargetLevels(status="rejected", reason="Targets need an entry above a positive stop-loss")

        risk = entry_price - stop_loss_price
        final_price = entry_price + risk * MIN_FINAL_RR

        text = (logic or "").lower()
        if match := _PERCENT.search(text):
            partial_price = entry_price * (1 + float(match.group(1)) / 100.0)
        elif match := _ABOVE.search(text):
            partial_price = float(match.group(1))
        elif _PREV_DAY_HIGH.search(text) and previous_day_high is not None:
            partial_price = float(previous_day_high)
        else:
            partial_price = entry_price + risk * MIN_PARTIAL_RR

        partial_price = min(partial_price, final_price)
        partial_rr = round((partial_price - entry_price) / risk, 6)
        final_rr = round((final_price - entry_price) / risk, 6)

        partial = TargetLevel(price=round(partial_price, 2), rr=round(partial_rr, 2))
        final = TargetLevel(price=round(final_price, 2), rr=round(final_rr, 2))

        if partial_rr < MIN_PARTIAL_RR or final_rr < MIN_FINAL_RR:
            return TargetLevels(
                status="rejected",
                reason=f"TP does not meet minimum RR requirement (partial: {partial_rr:.2f}x, final: {final_rr:.2f}x)",
                partial=partial,
                final=final,
            )

        return TargetLevels(
            status="approved",
            reason=f"Partial {partial.price:.2f} ({partial.rr:.2f}x RR), final {final.price:.2f} ({final.rr:.2f}x RR)",
            partial=partial,
            final=final,
        )

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def validate_trade_plan(
        self,
        stop_loss_logic: str | None,
        take_profit_logic: str | None,
        entry_price: float,
        funds_available: float,
        swing_low: float | None = None,
        previous_day_high: float | None = None,
    ) -> RiskDecision:
        """Stop -> target -> lot size -> funds. The first rejection is returned."""
        stop = self.convert_stop_loss(stop_loss_logic, entry_price, swing_low=swing_low)
        if stop.status == "rejected":
            return RiskDecision(status="rejected", reason=stop.reason, stop_loss=stop)

        targets = self.convert_targets(take_profit_logic, entry_price, stop.price, previous_day_high)
        if targets.status == "rejected":
            return RiskDecision(status="rejected", reason=targets.reason, stop_loss=stop, targets=targets)

        sizing = self.lot_size(entry_price, stop.price)
        if sizing.status == "rejected":
            return RiskDecision(status="rejected", reason=sizing.reason, stop_loss=stop, targets=targets, sizing=sizing)

        quantity = sizing.lots * self.lot_multiplier
        required_margin = round(entry_price * quantity, 2)
        if not isinstance(funds_available, (int, float)) or required_margin > funds_available:
            return RiskDecision(
                status="rejected",
                reason=f"Insufficient funds: required {required_margin:.2f}, available {float(funds_available or 0):.2f}",
                stop_loss=stop,
                targets=targets,
                sizing=sizing,
                quantity=quantity,
                required_margin=required_margin,
            )

        return RiskDecision(
            status="approved",
            reason="Trade plan validated successfully",
            stop_loss=stop,
            targets=targets,
            sizing=sizing,
            quantity=quantity,
            required_margin=required_margin,
        )

    def build_executable_plan(
        self,
        trade_plan: TradePlan,
        candidate: StrikeCandidate,
        entry_price: float,
        funds_available: float,
        **levels: float | None,
    ) -> tuple[RiskDecision, ExecutablePlan | None]:
        decision = self.validate_trade_plan(
            trade_plan.stop_loss_logic,
            trade_plan.take_profit_logic,
            entry_price,
            funds_available,
            **levels,
        )
        if not decision.approved:
            return decision, None

        plan = ExecutablePlan(
            instrument=self.instrument.name,
            security_id=candidate.security_id,
            entry_price=round(entry_price, 2),
            stop_loss=decision.stop_loss.price,
            stop_loss_percent=round(decision.stop_loss.percent, 4),
            partial_target=decision.targets.partial,
            final_target=decision.targets.final,
            lots=decision.sizing.lots,
            lot_size=self.lot_multiplier,
            quantity=decision.quantity,
            total_risk=decision.sizing.total_risk,
            required_margin=decision.required_margin,
        )
        return decision, plan


def verify_order_args(plan: ExecutablePlan, args: dict[str, Any]) -> list[str]:
    """
    Compare planner-proposed order arguments with the executable plan.

    Numeric risk fields are recomputed upstream and never trusted; any
    mismatch is an error.
    """
    errors: list[str] = []

    if args.get("security_id") != plan.security_id:
        errors.append(f"security_id {args.get('security_id')!r} does not match plan {plan.security_id!r}")
    if args.get("transaction_type") != plan.transaction_type:
        errors.append(f"transaction_type must be {plan.transaction_type}")
    if args.get("quantity") != plan.quantity:
        errors.append(f"quantity {args.get('quantity')!r} does not match plan quantity {plan.quantity}")

    checks = (
        ("price", plan.entry_price),
        ("stop_loss_price", plan.stop_loss),
        ("target_price", plan.final_target.price),
    )
    for key, expected in checks:
        if key not in args or args[key] is None:
            continue
        value = args[key]
        if not _finite_positive(value) or abs(value - expected) > PRICE_TOLERANCE:
            errors.append(f"{key} {value!r} does not match plan value {expected}")

    return errors
