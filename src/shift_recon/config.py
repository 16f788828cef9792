"""Runtime settings for reconciliation, read from RECON_* environment variables."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ReconciliationSettings(BaseSettings):
    """Tunable constants for window building, matching and orchestration."""

    model_config = SettingsConfigDict(
        env_prefix="RECON_",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    clock_skew_hours: int = Field(default=3, ge=0, description="Platform B clock offset in hours")
    match_tolerance_minutes: int = Field(default=30, ge=0, description="Fallback timestamp tolerance")
    amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0, description="Fallback amount tolerance")
    max_workers: int = Field(default=4, ge=1, description="Concurrent cabinet fetches")
    cabinet_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-cabinet fetch timeout")
    count_unmatched_in_total: bool = Field(default=True, description="Include leftovers in total_transactions")
    expense_fee_rate: Decimal = Field(default=Decimal("0"), ge=0, description="Commission applied to expense legs")
    rate_limit: str = Field(default="60/minute", description="Rate limit for reconciliation endpoints")

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(hours=self.clock_skew_hours)

    @property
    def match_tolerance(self) -> timedelta:
        return timedelta(minutes=self.match_tolerance_minutes)


_settings: Optional[ReconciliationSettings] = None


def get_settings() -> ReconciliationSettings:
    """Return settings loaded from the environment, cached after first use.

    Raises:
        ValueError: If a RECON_* variable holds an invalid value.
    """
    global _settings
    if _settings is None:
        _settings = ReconciliationSettings()
        logger.debug(f"Loaded reconciliation settings: {_settings.model_dump()}")
    return _settings
