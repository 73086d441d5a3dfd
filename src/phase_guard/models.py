# models.py
# Data contracts for the phase guard.
# No business logic lives here. Tool argument models are built in tools.py.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Generic validation report
# ---------------------------------------------------------------------------


class ValidationReport(BaseModel):
    """Outcome of a non-raising check. All errors are reported together."""

    valid: bool
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationReport":
        return cls(valid=not errors, errors=list(errors))


class Outcome(BaseModel):
    """
    Result variant for conditions that may be fatal.

    The orchestrator decides whether a fatal outcome is phase-local or
    run-fatal; nothing here raises.
    """

    ok: bool
    fatal: bool = False
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, **detail: Any) -> "Outcome":
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, error: str, fatal: bool = False, **detail: Any) -> "Outcome":
        return cls(ok=False, fatal=fatal, error=error, detail=detail)


# ---------------------------------------------------------------------------
# Tool contracts
# ---------------------------------------------------------------------------


class FieldSpec(BaseModel):
    """One typed field of a tool's input or output schema."""

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str | list[str] | None = None
    description: str | None = None
    enum: list[Any] | None = None
    minimum: float | None = None
    maximum: float | None = None


class ToolSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "object"
    properties: dict[str, FieldSpec] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class Dependencies(BaseModel):
    """Declarative preconditions a tool call must satisfy against prior context."""

    model_config = ConfigDict(frozen=True)

    required_tools: list[str] = Field(default_factory=list)
    required_outputs: list[str] = Field(default_factory=list)
    required_states: list[str] = Field(default_factory=list)
    forbidden_states: list[str] = Field(default_factory=list)
    required_guards: list[str] = Field(default_factory=list)
    forbidden_after: list[str] = Field(default_factory=list)
    forbidden_callers: list[str] = Field(default_factory=list)
    max_calls_per_trade: int | None = None
    derived_inputs: dict[str, str] = Field(default_factory=dict)
    produces: list[str] = Field(default_factory=list)
    date_constraints: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return self == Dependencies()


RiskLevel = Literal["none", "low", "medium", "high"]


class ToolDescriptor(BaseModel):
    """The contract a planner sees for one tool. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str
    inputs: ToolSchema = Field(default_factory=ToolSchema)
    outputs: ToolSchema = Field(default_factory=ToolSchema)
    when_to_use: str | list[str] | None = None
    when_not_to_use: str | list[str] | None = None
    side_effects: list[str] = Field(default_factory=list)
    safety_rules: list[str] = Field(default_factory=list)
    category: str | None = None
    risk_level: RiskLevel = "none"
    dependencies: Dependencies = Field(default_factory=Dependencies)

    @property
    def places_orders(self) -> bool:
        return self.category == "trade" or self.name.endswith(".place")

    def to_schema(self) -> dict[str, Any]:
        """Planner-facing JSON shape of this descriptor."""
        schema = self.model_dump(exclude_none=True, exclude={"dependencies"})
        if not self.dependencies.is_empty():
            schema["dependencies"] = self.dependencies.model_dump(exclude_defaults=True)
        return schema


class ToolResult(BaseModel):
    """Uniform envelope for every dispatch. Errors are values, never raised."""

    status: Literal["success", "error", "rejected"]
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    validation_errors: list[str] = Field(default_factory=list)
    safety_errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


# ---------------------------------------------------------------------------
# Planner decisions and trace
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    tool_name: str = Field(..., min_length=1)
    tool_args: dict[str, Any] = Field(default_factory=dict)


class PlannerDecision(BaseModel):
    """One structured planner response. Exactly one action per iteration."""

    model_config = ConfigDict(extra="ignore")

    action: Literal["tool_call", "tool_batch", "final"]
    tool_name: str | None = None
    tool_args: dict[str, Any] = Field(default_factory=dict)
    calls: list[ToolCall] = Field(default_factory=list)
    final_output: Any = None
    stop_reason: str | None = None
    thought: str | None = None

    def tool_calls(self) -> list[ToolCall]:
        if self.action == "tool_call" and self.tool_name:
            return [ToolCall(tool_name=self.tool_name, tool_args=self.tool_args)]
        if self.action == "tool_batch":
            return list(self.calls)
        return []


class TraceEntry(BaseModel):
    iteration: int
    plan: dict[str, Any] | None = None
    tool_call: ToolCall | None = None
    result: ToolResult | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class PhaseStatus(str, Enum):
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    MAX_ITERATIONS = "max_iterations"
    VERIFICATION_FAILED = "verification_failed"
    ERROR = "error"
    HALTED = "halted"


class PhaseResult(BaseModel):
    phase: str
    status: PhaseStatus
    reason: str = ""
    iterations: int = 0
    max_iterations: int = 0
    duration: float = 0.0
    trace: list[TraceEntry] = Field(default_factory=list)
    final_output: Any = None

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "duration": round(self.duration, 4),
            "trace": [entry.model_dump(mode="json", exclude_none=True) for entry in self.trace],
        }


# ---------------------------------------------------------------------------
# Trade artifacts
# ---------------------------------------------------------------------------

Bias = Literal["BULLISH", "BEARISH", "NO_TRADE"]


class TierAssessment(BaseModel):
    """One tier's judgement in the analysis cascade."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    tier: str
    regime: str | None = None
    direction: Literal["BULLISH", "BEARISH", "NEUTRAL"] | None = None
    trigger: str | None = None
    tradable: bool = True
    reason: str = ""


class StrikeCandidate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    security_id: str
    strike: float | None = None
    option_type: Literal["CE", "PE"] | None = None
    moneyness: str | None = None
    last_price: float | None = Field(default=None, gt=0)
    reason: str = ""


class TradePlan(BaseModel):
    """Qualitative analysis output. Carries no numeric risk fields."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    mode: str = "OPTIONS_INTRADAY"
    instrument: str = "NIFTY"
    bias: Bias
    tiers: tuple[TierAssessment, TierAssessment, TierAssessment]
    candidates: list[StrikeCandidate] = Field(default_factory=list, max_length=3)
    stop_loss_logic: str = ""
    take_profit_logic: str = ""
    invalidations: list[str] = Field(default_factory=list)


class CandidateSelection(BaseModel):
    """Validation-phase planner output: which candidate, plus optional reference levels."""

    model_config = ConfigDict(extra="ignore")

    security_id: str
    swing_low: float | None = Field(default=None, gt=0)
    previous_day_high: float | None = Field(default=None, gt=0)
    reason: str = ""


class TargetLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    rr: float
    exit_pct: int = 50


class ExecutablePlan(BaseModel):
    """Numeric, risk-validated plan. Only the risk converter builds these."""

    model_config = ConfigDict(frozen=True)

    instrument: str
    security_id: str
    transaction_type: Literal["BUY"] = "BUY"
    entry_price: float = Field(..., gt=0)
    stop_loss: float = Field(..., gt=0)
    stop_loss_percent: float
    partial_target: TargetLevel
    final_target: TargetLevel
    lots: int = Field(..., ge=1)
    lot_size: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1)
    total_risk: float
    required_margin: float


class RunResult(BaseModel):
    final_status: str | None = None
    final_output: Any = None
    phases: dict[str, PhaseResult] = Field(default_factory=dict)
    trade_plan: TradePlan | None = None
    executable_plan: ExecutablePlan | None = None
    order_receipt: dict[str, Any] | None = None
    halted: bool = False
    halt_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """The stable process-facing shape an operator or UI consumes."""
        out: dict[str, Any] = {
            "final_status": self.final_status,
            "final_output": self.final_output,
            "phases": {name: result.summary() for name, result in self.phases.items()},
        }
        if self.trade_plan is not None:
            out["trade_plan"] = self.trade_plan.model_dump(mode="json")
        if self.executable_plan is not None:
            out["executable_plan"] = self.executable_plan.model_dump(mode="json")
        if self.order_receipt is not None:
            out["order_receipt"] = self.order_receipt
        if self.halted:
            out["halt_reason"] = self.halt_reason
        return out
