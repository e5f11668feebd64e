"""Demand-pressure surge multiplier with optional EMA smoothing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from rate_engine.domain.constraints import (
    SurgeParameterError,
    validate_demand_supply,
    validate_surge_params,
)
from rate_engine.domain.models import DemandSupply, SurgeParams


class SurgeError(Exception):
    """Base exception for surge calculation and materialization failures."""


class InvalidSurgeParametersError(SurgeError):
    """Raised when supply, historical pressure or coefficients are out of range."""


@dataclass(frozen=True)
class SurgeCalculation:
    pressure: float
    normalized_pressure: float
    smoothed_pressure: float
    raw_factor: Optional[float]
    multiplier: float
    clamped: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "pressure": self.pressure,
            "normalized_pressure": self.normalized_pressure,
            "smoothed_pressure": self.smoothed_pressure,
            "raw_factor": self.raw_factor,
            "multiplier": self.multiplier,
            "clamped": self.clamped,
        }


def calculate_surge_multiplier(
    demand_supply: DemandSupply,
    params: SurgeParams,
    previous_smoothed: Optional[float] = None,
    supply_divisor: float = 10.0,
) -> SurgeCalculation:
    """Map demand/supply to a clamped price multiplier.

    ``historical_avg_pressure`` is measured per 100 capacity units while supply
    here is per 10 units, hence the division by ``supply_divisor`` before
    normalizing. When ``previous_smoothed`` is given the normalized pressure is
    blended with it using ``params.ema_alpha``.
    """
    try:
        validate_demand_supply(demand_supply)
        validate_surge_params(params)
    except SurgeParameterError as exc:
        raise InvalidSurgeParametersError(str(exc)) from exc
    if supply_divisor <= 0:
        raise InvalidSurgeParametersError("supply_divisor must be > 0")

    pressure = demand_supply.current_demand / demand_supply.current_supply
    normalized = pressure / (demand_supply.historical_avg_pressure / supply_divisor)
    if previous_smoothed is None:
        smoothed = normalized
    else:
        smoothed = params.ema_alpha * normalized + (1.0 - params.ema_alpha) * previous_smoothed

    if smoothed <= 0:
        # ln(0) diverges; zero demand always lands on the floor.
        raw_factor: Optional[float] = None
        multiplier = params.min_multiplier
    else:
        raw_factor = 1.0 + params.alpha * math.log(smoothed)
        multiplier = min(max(raw_factor, params.min_multiplier), params.max_multiplier)

    return SurgeCalculation(
        pressure=pressure,
        normalized_pressure=normalized,
        smoothed_pressure=smoothed,
        raw_factor=raw_factor,
        multiplier=multiplier,
        clamped=raw_factor is None or multiplier != raw_factor,
    )
