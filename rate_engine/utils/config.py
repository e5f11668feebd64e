"""Runtime settings resolved once from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


_ENV_PREFIX = "RATE_ENGINE_"


def _env_str(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    default_timezone: str
    default_currency: str
    price_decimal_places: int

    capacity_fallback_min: int
    capacity_fallback_max: int
    capacity_fallback_default: int
    capacity_fallback_allocated: int

    surge_priority_base: int
    surge_default_duration_hours: int
    surge_supply_normalization_divisor: float
    surge_ema_smoothing_enabled: bool

    demand_capacity_unit: float
    demand_history_window_days: int
    demand_default_historical_pressure: float

    scheduler_default_interval_seconds: float
    scheduler_min_interval_seconds: float

    seed_demo_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from `RATE_ENGINE_*` variables; cached for the process."""
    return Settings(
        app_name=_env_str("APP_NAME", "Hierarchical Rate Engine"),
        app_version=_env_str("APP_VERSION", "0.1.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("DATABASE_PATH", "data/rate_engine.db")),
        default_timezone=_env_str("DEFAULT_TIMEZONE", "UTC"),
        default_currency=_env_str("DEFAULT_CURRENCY", "USD"),
        price_decimal_places=_env_int("PRICE_DECIMAL_PLACES", 2),
        capacity_fallback_min=_env_int("CAPACITY_FALLBACK_MIN", 0),
        capacity_fallback_max=_env_int("CAPACITY_FALLBACK_MAX", 100),
        capacity_fallback_default=_env_int("CAPACITY_FALLBACK_DEFAULT", 50),
        capacity_fallback_allocated=_env_int("CAPACITY_FALLBACK_ALLOCATED", 0),
        surge_priority_base=_env_int("SURGE_PRIORITY_BASE", 10000),
        surge_default_duration_hours=_env_int("SURGE_DEFAULT_DURATION_HOURS", 1),
        surge_supply_normalization_divisor=_env_float("SURGE_SUPPLY_DIVISOR", 10.0),
        surge_ema_smoothing_enabled=_env_bool("SURGE_EMA_SMOOTHING", False),
        demand_capacity_unit=_env_float("DEMAND_CAPACITY_UNIT", 100.0),
        demand_history_window_days=_env_int("DEMAND_HISTORY_WINDOW_DAYS", 30),
        demand_default_historical_pressure=_env_float("DEMAND_DEFAULT_HISTORICAL_PRESSURE", 1.0),
        scheduler_default_interval_seconds=_env_float("SCHEDULER_DEFAULT_INTERVAL_SECONDS", 3600.0),
        scheduler_min_interval_seconds=_env_float("SCHEDULER_MIN_INTERVAL_SECONDS", 1.0),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
    )
