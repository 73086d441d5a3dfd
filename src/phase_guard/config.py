# config.py
# Environment-driven settings. Every key can be set as PHASE_GUARD_<NAME>
# in the process environment or a .env file.

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PHASE_GUARD_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Planner
    planner_model: str = "anthropic/claude-3.5-haiku"
    planner_base_url: str = "https://openrouter.ai/api/v1"
    planner_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PHASE_GUARD_PLANNER_API_KEY", "OPENROUTER_API_KEY"),
    )

    # Phase budgets
    analysis_max_iterations: int = Field(8, ge=1)
    analysis_timeout: float = Field(60.0, gt=0)
    validation_max_iterations: int = Field(3, ge=1)
    validation_timeout: float = Field(10.0, gt=0)
    execution_max_iterations: int = Field(2, ge=1)
    execution_timeout: float = Field(15.0, gt=0)
    tier_max_iterations: int = Field(3, ge=1)
    max_parallel_tools: int = Field(4, ge=1)

    # Risk
    account_balance: float = Field(100_000.0, gt=0)
    max_risk_percent: float = Field(1.0, gt=0, le=100)
    instrument: str = "NIFTY"
    lot_size: int | None = Field(None, ge=1)
    max_sl_percent: float | None = Field(None, gt=0, le=1)
    sl_fallback: Literal["default", "reject"] = "default"
    daily_loss_cap: float = Field(5_000.0, gt=0)

    # Safety
    dry_run: bool = True
    dry_run_only: bool = False
    require_stoploss: bool = True
    max_position_size: int | None = Field(None, ge=1)

    # Workflow
    checklist_path: Path | None = None
    date_mode: Literal["LIVE", "HISTORICAL"] = "LIVE"
    candle_interval: str = "5"
    tracker_stale_after: float = Field(30.0, gt=0)


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
