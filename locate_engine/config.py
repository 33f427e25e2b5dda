"""Application settings and logging setup."""

import logging
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Locate engine settings, overridable through LOCATE_* environment variables."""

    # Application
    app_name: str = "locate-engine"
    environment: str = "development"
    log_level: str = "INFO"
    one_call_center: str = "WV811"
    host: str = "0.0.0.0"
    port: int = 8000

    # Jurisdiction calendar
    timezone: str = "America/New_York"
    holiday_country: Optional[str] = "US"
    holiday_subdivision: Optional[str] = "WV"
    extra_holidays: List[date] = Field(default_factory=list)

    # Jurisdiction rules (statutory periods)
    notice_business_days: int = 2
    validity_days: int = 10
    validity_in_business_days: bool = False
    response_business_days: int = 2
    update_by_business_days: int = 8

    # Alerting
    alert_rules_path: Optional[Path] = None
    high_risk_threshold: int = 70
    ack_deadline_minutes: int = 15
    expired_alert_lookback_hours: int = 24
    radar_local_hour: int = 6
    renewal_local_hour: int = 7
    renewal_window_days: int = 3

    # Dispatch
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0
    dispatch_backoff_max_seconds: float = 30.0
    dispatch_timeout_seconds: float = 10.0
    max_dispatches_per_sweep: int = 200

    # Sweeps
    sweep_concurrency: int = 10
    alert_sweep_interval_seconds: int = 300
    expiry_sweep_interval_seconds: int = 3600
    escalation_sweep_interval_seconds: int = 60
    digest_sweep_interval_seconds: int = 900

    model_config = SettingsConfigDict(
        env_prefix="LOCATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
