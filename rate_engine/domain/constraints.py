"""Domain-level validation rules for policy layers, schedules and surge configs."""

from __future__ import annotations

from typing import Iterable

from rate_engine.domain.models import (
    Blackout,
    BlackoutType,
    DemandSupply,
    LayerCategory,
    LayerKind,
    OperatingHours,
    PolicyLayer,
    PolicyWindow,
    SurgeConfig,
    SurgeParams,
    TimeSlot,
)
from rate_engine.utils.time_utils import InvalidTimeError, parse_local_time


MIN_SURGE_ALPHA = 0.1
MAX_SURGE_ALPHA = 1.0
MIN_SURGE_MULTIPLIER = 0.5
MAX_SURGE_MULTIPLIER = 3.0


class PolicyValidationError(ValueError):
    """Raised when a policy layer or schedule violates a structural invariant."""


class SurgeParameterError(ValueError):
    """Raised when surge demand/supply or coefficients are out of range."""


def _validate_range(start_time: str, end_time: str, label: str) -> tuple[int, int]:
    try:
        start = parse_local_time(start_time)
        end = parse_local_time(end_time)
    except InvalidTimeError as exc:
        raise PolicyValidationError(f"{label}: {exc}") from exc
    if start >= end:
        raise PolicyValidationError(
            f"{label}: start {start_time} must be before end {end_time} "
            "(windows crossing midnight are not supported)"
        )
    return start, end


def validate_windows(windows: Iterable[PolicyWindow], label: str = "window") -> None:
    for index, window in enumerate(windows):
        _validate_range(window.start_time, window.end_time, f"{label}[{index}]")


def validate_policy_layer(layer: PolicyLayer) -> None:
    if layer.effective_to is not None and layer.effective_from > layer.effective_to:
        raise PolicyValidationError("effective_from must not be after effective_to")
    validate_windows(layer.windows, f"layer {layer.id} window")

    if layer.kind is LayerKind.DURATION_PACKAGE:
        if not layer.packages:
            raise PolicyValidationError("DURATION_PACKAGE layers require at least one package")
        for package in layer.packages:
            if package.duration_hours <= 0:
                raise PolicyValidationError("package duration_hours must be > 0")
            if package.total_price < 0:
                raise PolicyValidationError("package total_price must be >= 0")
    elif not layer.windows:
        raise PolicyValidationError(f"{layer.kind.value} layers require at least one window")

    if layer.category is LayerCategory.CAPACITY:
        if layer.kind is not LayerKind.TIME_WINDOW:
            raise PolicyValidationError("capacity layers must be TIME_WINDOW layers")
        for window in layer.windows:
            if window.capacity is None:
                raise PolicyValidationError("capacity layer windows require capacity bounds")
            if window.capacity.min_capacity > window.capacity.max_capacity:
                raise PolicyValidationError("min_capacity must not exceed max_capacity")

    recurrence = layer.recurrence
    if recurrence.day_of_month is not None and not 1 <= recurrence.day_of_month <= 31:
        raise PolicyValidationError("day_of_month must be between 1 and 31")


def validate_time_slots(slots: Iterable[TimeSlot], label: str = "slot") -> None:
    """Reject malformed or overlapping slots within one day."""
    ranges = sorted(
        _validate_range(slot.start_time, slot.end_time, label) for slot in slots
    )
    for previous, current in zip(ranges, ranges[1:]):
        if current[0] < previous[1]:
            raise PolicyValidationError(f"{label}: overlapping time slots are not allowed")


def validate_blackout(blackout: Blackout) -> None:
    if blackout.type is BlackoutType.PARTIAL:
        if blackout.start_time is None or blackout.end_time is None:
            raise PolicyValidationError("PARTIAL blackouts require start_time and end_time")
        _validate_range(blackout.start_time, blackout.end_time, f"blackout {blackout.id}")
    if blackout.recurring_until is not None and blackout.recurring_until < blackout.date:
        raise PolicyValidationError("blackout recurring_until must not precede its date")


def validate_operating_hours(hours: OperatingHours) -> None:
    for day, slots in hours.weekly_schedule.items():
        validate_time_slots(slots, f"{day.value} schedule")
    for blackout in hours.blackouts:
        validate_blackout(blackout)


def validate_demand_supply(demand_supply: DemandSupply) -> None:
    if demand_supply.current_demand < 0:
        raise SurgeParameterError("current_demand must be >= 0")
    if demand_supply.current_supply <= 0:
        raise SurgeParameterError("current_supply must be > 0")
    if demand_supply.historical_avg_pressure <= 0:
        raise SurgeParameterError("historical_avg_pressure must be > 0")


def validate_surge_params(params: SurgeParams) -> None:
    if not MIN_SURGE_ALPHA <= params.alpha <= MAX_SURGE_ALPHA:
        raise SurgeParameterError(
            f"alpha must be between {MIN_SURGE_ALPHA} and {MAX_SURGE_ALPHA}"
        )
    if not MIN_SURGE_MULTIPLIER <= params.min_multiplier < params.max_multiplier <= MAX_SURGE_MULTIPLIER:
        raise SurgeParameterError(
            f"multipliers must satisfy {MIN_SURGE_MULTIPLIER} <= min < max <= {MAX_SURGE_MULTIPLIER}"
        )
    if not 0.0 < params.ema_alpha <= 1.0:
        raise SurgeParameterError("ema_alpha must be in (0, 1]")


def validate_surge_config(config: SurgeConfig) -> None:
    validate_demand_supply(config.demand_supply)
    validate_surge_params(config.surge_params)
    if config.effective_to is not None and config.effective_from > config.effective_to:
        raise PolicyValidationError("effective_from must not be after effective_to")
    if config.surge_duration_hours <= 0:
        raise PolicyValidationError("surge_duration_hours must be > 0")
    validate_windows(config.windows, f"surge config {config.id} window")
