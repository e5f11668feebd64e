"""Plain-dict (de)serialization of domain records for JSON columns and API payloads."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Mapping, Optional

from rate_engine.domain.models import (
    ApprovalStatus,
    Blackout,
    BlackoutType,
    CapacityAllocation,
    CapacityBounds,
    DayOfWeek,
    DemandSnapshot,
    DemandSupply,
    DurationPackage,
    HierarchyLevel,
    HierarchyNode,
    HourlyCapacityOverride,
    LayerCategory,
    LayerKind,
    OperatingHours,
    PolicyLayer,
    PolicyWindow,
    Recurrence,
    RecurrencePattern,
    Scope,
    SurgeConfig,
    SurgeParams,
    TieBreak,
    TimeSlot,
)
from rate_engine.utils.time_utils import ensure_utc


# Fixed-width UTC text keeps lexicographic and chronological order identical in SQLite.
_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def loads(value: Optional[str]) -> Any:
    if value is None or value == "":
        return None
    return json.loads(value)


def dt_to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime(_DATETIME_FORMAT)


def dt_from_text(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _date_from(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _datetime_from(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return dt_from_text(str(value))


def scope_to_dict(scope: Scope) -> dict[str, str]:
    return {"level": scope.level.value, "entity_id": scope.entity_id}


def scope_from_dict(data: Mapping[str, Any]) -> Scope:
    return Scope(level=HierarchyLevel(data["level"]), entity_id=str(data["entity_id"]))


def capacity_to_dict(bounds: Optional[CapacityBounds]) -> Optional[dict[str, int]]:
    if bounds is None:
        return None
    return {
        "min_capacity": bounds.min_capacity,
        "max_capacity": bounds.max_capacity,
        "default_capacity": bounds.default_capacity,
        "allocated_capacity": bounds.allocated_capacity,
    }


def capacity_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[CapacityBounds]:
    if data is None:
        return None
    return CapacityBounds(
        min_capacity=int(data["min_capacity"]),
        max_capacity=int(data["max_capacity"]),
        default_capacity=int(data["default_capacity"]),
        allocated_capacity=int(data.get("allocated_capacity", 0)),
    )


def window_to_dict(window: PolicyWindow) -> dict[str, Any]:
    return {
        "start_time": window.start_time,
        "end_time": window.end_time,
        "value": window.value,
        "capacity": capacity_to_dict(window.capacity),
    }


def window_from_dict(data: Mapping[str, Any]) -> PolicyWindow:
    return PolicyWindow(
        start_time=str(data["start_time"]),
        end_time=str(data["end_time"]),
        value=float(data.get("value") or 0.0),
        capacity=capacity_from_dict(data.get("capacity")),
    )


def recurrence_to_dict(recurrence: Recurrence) -> dict[str, Any]:
    return {
        "pattern": recurrence.pattern.value,
        "days_of_week": [day.value for day in recurrence.days_of_week],
        "day_of_month": recurrence.day_of_month,
    }


def recurrence_from_dict(data: Optional[Mapping[str, Any]]) -> Recurrence:
    if not data:
        return Recurrence()
    day_of_month = data.get("day_of_month")
    return Recurrence(
        pattern=RecurrencePattern(data.get("pattern", RecurrencePattern.NONE.value)),
        days_of_week=tuple(DayOfWeek(day) for day in data.get("days_of_week") or ()),
        day_of_month=int(day_of_month) if day_of_month is not None else None,
    )


def package_to_dict(package: DurationPackage) -> dict[str, Any]:
    return {
        "duration_hours": package.duration_hours,
        "total_price": package.total_price,
        "description": package.description,
    }


def package_from_dict(data: Mapping[str, Any]) -> DurationPackage:
    return DurationPackage(
        duration_hours=float(data["duration_hours"]),
        total_price=float(data["total_price"]),
        description=str(data.get("description") or ""),
    )


def blackout_to_dict(blackout: Blackout) -> dict[str, Any]:
    return {
        "id": blackout.id,
        "date": blackout.date.isoformat(),
        "type": blackout.type.value,
        "start_time": blackout.start_time,
        "end_time": blackout.end_time,
        "recurring_yearly": blackout.recurring_yearly,
        "recurring_until": blackout.recurring_until.isoformat() if blackout.recurring_until else None,
        "cancelled": blackout.cancelled,
        "reason": blackout.reason,
    }


def blackout_from_dict(data: Mapping[str, Any]) -> Blackout:
    recurring_until = data.get("recurring_until")
    return Blackout(
        id=str(data["id"]),
        date=_date_from(data["date"]),
        type=BlackoutType(data.get("type", BlackoutType.FULL_DAY.value)),
        start_time=data.get("start_time"),
        end_time=data.get("end_time"),
        recurring_yearly=bool(data.get("recurring_yearly", False)),
        recurring_until=_date_from(recurring_until) if recurring_until else None,
        cancelled=bool(data.get("cancelled", False)),
        reason=str(data.get("reason") or ""),
    )


def operating_hours_to_dict(hours: Optional[OperatingHours]) -> Optional[dict[str, Any]]:
    if hours is None:
        return None
    return {
        "weekly_schedule": {
            day.value: [{"start_time": s.start_time, "end_time": s.end_time} for s in slots]
            for day, slots in hours.weekly_schedule.items()
        },
        "blackouts": [blackout_to_dict(blackout) for blackout in hours.blackouts],
    }


def operating_hours_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[OperatingHours]:
    if data is None:
        return None
    schedule = {
        DayOfWeek(day): tuple(
            TimeSlot(start_time=str(slot["start_time"]), end_time=str(slot["end_time"]))
            for slot in slots
        )
        for day, slots in (data.get("weekly_schedule") or {}).items()
        if slots is not None
    }
    return OperatingHours(
        weekly_schedule=schedule,
        blackouts=tuple(blackout_from_dict(item) for item in data.get("blackouts") or ()),
    )


def allocation_to_dict(allocation: Optional[CapacityAllocation]) -> Optional[dict[str, float]]:
    if allocation is None:
        return None
    return {
        "transient": allocation.transient,
        "events": allocation.events,
        "reserved": allocation.reserved,
        "unavailable": allocation.unavailable,
        "ready_to_use": allocation.ready_to_use,
    }


def allocation_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[CapacityAllocation]:
    if data is None:
        return None
    return CapacityAllocation(
        transient=float(data.get("transient", 0.0)),
        events=float(data.get("events", 0.0)),
        reserved=float(data.get("reserved", 0.0)),
        unavailable=float(data.get("unavailable", 0.0)),
        ready_to_use=float(data.get("ready_to_use", 0.0)),
    )


def override_to_dict(override: HourlyCapacityOverride) -> dict[str, Any]:
    return {
        "local_date": override.local_date.isoformat(),
        "hour": override.hour,
        "bounds": capacity_to_dict(override.bounds),
    }


def override_from_dict(data: Mapping[str, Any]) -> HourlyCapacityOverride:
    return HourlyCapacityOverride(
        local_date=_date_from(data["local_date"]),
        hour=int(data["hour"]),
        bounds=capacity_from_dict(data["bounds"]),
    )


def node_from_dict(data: Mapping[str, Any]) -> HierarchyNode:
    rate = data.get("default_hourly_rate")
    return HierarchyNode(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        level=HierarchyLevel(data["level"]),
        parent_id=data.get("parent_id"),
        timezone=data.get("timezone"),
        default_hourly_rate=float(rate) if rate is not None else None,
        default_capacity=capacity_from_dict(data.get("default_capacity")),
        operating_hours=operating_hours_from_dict(data.get("operating_hours")),
        capacity_allocation=allocation_from_dict(data.get("capacity_allocation")),
        hourly_capacity_overrides=tuple(
            override_from_dict(item) for item in data.get("hourly_capacity_overrides") or ()
        ),
    )


def layer_to_dict(layer: PolicyLayer) -> dict[str, Any]:
    return {
        "id": layer.id,
        "name": layer.name,
        "scope": scope_to_dict(layer.scope),
        "kind": layer.kind.value,
        "category": layer.category.value,
        "priority": layer.priority,
        "tie_break": layer.tie_break.value,
        "effective_from": dt_to_text(layer.effective_from),
        "effective_to": dt_to_text(layer.effective_to),
        "recurrence": recurrence_to_dict(layer.recurrence),
        "windows": [window_to_dict(window) for window in layer.windows],
        "packages": [package_to_dict(package) for package in layer.packages],
        "active": layer.active,
        "approval_status": layer.approval_status.value,
        "description": layer.description,
        "surge_config_id": layer.surge_config_id,
        "target_hour_start": dt_to_text(layer.target_hour_start),
        "superseded_at": dt_to_text(layer.superseded_at),
        "superseded_reason": layer.superseded_reason,
    }


def layer_from_dict(data: Mapping[str, Any]) -> PolicyLayer:
    return PolicyLayer(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        scope=scope_from_dict(data["scope"]),
        kind=LayerKind(data.get("kind", LayerKind.TIME_WINDOW.value)),
        category=LayerCategory(data.get("category", LayerCategory.RATE.value)),
        priority=int(data.get("priority", 0)),
        tie_break=TieBreak(data.get("tie_break", TieBreak.PRIORITY.value)),
        effective_from=_datetime_from(data["effective_from"]),
        effective_to=_datetime_from(data.get("effective_to")),
        recurrence=recurrence_from_dict(data.get("recurrence")),
        windows=tuple(window_from_dict(item) for item in data.get("windows") or ()),
        packages=tuple(package_from_dict(item) for item in data.get("packages") or ()),
        active=bool(data.get("active", True)),
        approval_status=ApprovalStatus(data.get("approval_status", ApprovalStatus.APPROVED.value)),
        description=str(data.get("description") or ""),
        surge_config_id=data.get("surge_config_id"),
        target_hour_start=_datetime_from(data.get("target_hour_start")),
        superseded_at=_datetime_from(data.get("superseded_at")),
        superseded_reason=data.get("superseded_reason"),
    )


def demand_supply_to_dict(value: DemandSupply) -> dict[str, float]:
    return {
        "current_demand": value.current_demand,
        "current_supply": value.current_supply,
        "historical_avg_pressure": value.historical_avg_pressure,
    }


def demand_supply_from_dict(data: Mapping[str, Any]) -> DemandSupply:
    return DemandSupply(
        current_demand=float(data["current_demand"]),
        current_supply=float(data["current_supply"]),
        historical_avg_pressure=float(data["historical_avg_pressure"]),
    )


def surge_params_to_dict(value: SurgeParams) -> dict[str, float]:
    return {
        "alpha": value.alpha,
        "min_multiplier": value.min_multiplier,
        "max_multiplier": value.max_multiplier,
        "ema_alpha": value.ema_alpha,
    }


def surge_params_from_dict(data: Optional[Mapping[str, Any]]) -> SurgeParams:
    if not data:
        return SurgeParams()
    defaults = SurgeParams()
    return SurgeParams(
        alpha=float(data.get("alpha", defaults.alpha)),
        min_multiplier=float(data.get("min_multiplier", defaults.min_multiplier)),
        max_multiplier=float(data.get("max_multiplier", defaults.max_multiplier)),
        ema_alpha=float(data.get("ema_alpha", defaults.ema_alpha)),
    )


def surge_config_to_dict(config: SurgeConfig) -> dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "scope": scope_to_dict(config.scope),
        "priority": config.priority,
        "demand_supply": demand_supply_to_dict(config.demand_supply),
        "surge_params": surge_params_to_dict(config.surge_params),
        "effective_from": dt_to_text(config.effective_from),
        "effective_to": dt_to_text(config.effective_to),
        "windows": [window_to_dict(window) for window in config.windows],
        "surge_duration_hours": config.surge_duration_hours,
        "active": config.active,
        "materialized_layer_id": config.materialized_layer_id,
        "last_materialized_at": dt_to_text(config.last_materialized_at),
        "last_smoothed_pressure": config.last_smoothed_pressure,
    }


def snapshot_to_dict(snapshot: DemandSnapshot) -> dict[str, Any]:
    return {
        "scope": scope_to_dict(snapshot.scope),
        "hour_start": dt_to_text(snapshot.hour_start),
        "bookings_count": snapshot.bookings_count,
        "total_attendees": snapshot.total_attendees,
        "available_capacity": snapshot.available_capacity,
        "demand_pressure": snapshot.demand_pressure,
        "historical_avg_pressure": snapshot.historical_avg_pressure,
        "timestamp": dt_to_text(snapshot.timestamp),
    }
