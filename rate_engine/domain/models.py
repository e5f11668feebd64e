"""Domain models for hierarchical rate, capacity and surge resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping, Optional


class HierarchyLevel(str, Enum):
    ACCOUNT = "ACCOUNT"
    SITE = "SITE"
    SUBAREA = "SUBAREA"
    VENUE_EVENT = "VENUE_EVENT"

    @property
    def rank(self) -> int:
        """Specificity rank; a higher rank strictly dominates layer priority."""
        match self:
            case HierarchyLevel.VENUE_EVENT:
                return 4
            case HierarchyLevel.SUBAREA:
                return 3
            case HierarchyLevel.SITE:
                return 2
            case HierarchyLevel.ACCOUNT:
                return 1
        raise ValueError(f"unhandled hierarchy level {self!r}")


class DayOfWeek(str, Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @classmethod
    def from_date(cls, value: date) -> "DayOfWeek":
        return _WEEKDAYS[value.weekday()]


_WEEKDAYS = tuple(DayOfWeek)


class LayerKind(str, Enum):
    TIME_WINDOW = "TIME_WINDOW"
    DURATION_PACKAGE = "DURATION_PACKAGE"
    SURGE_MULTIPLIER = "SURGE_MULTIPLIER"


class LayerCategory(str, Enum):
    RATE = "RATE"
    CAPACITY = "CAPACITY"


class TieBreak(str, Enum):
    PRIORITY = "PRIORITY"
    HIGHEST_VALUE = "HIGHEST_VALUE"
    LOWEST_VALUE = "LOWEST_VALUE"


class ApprovalStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"
    REJECTED = "REJECTED"


RETIRED_STATUSES = frozenset({ApprovalStatus.SUPERSEDED, ApprovalStatus.REJECTED})
LIVE_SURGE_STATUSES = frozenset({ApprovalStatus.DRAFT, ApprovalStatus.APPROVED})


class RecurrencePattern(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class BlackoutType(str, Enum):
    FULL_DAY = "FULL_DAY"
    PARTIAL = "PARTIAL"


@dataclass(frozen=True)
class Scope:
    level: HierarchyLevel
    entity_id: str


@dataclass(frozen=True)
class Recurrence:
    pattern: RecurrencePattern = RecurrencePattern.NONE
    days_of_week: tuple[DayOfWeek, ...] = ()
    day_of_month: Optional[int] = None


@dataclass(frozen=True)
class CapacityBounds:
    min_capacity: int
    max_capacity: int
    default_capacity: int
    allocated_capacity: int = 0


@dataclass(frozen=True)
class PolicyWindow:
    """A same-day local time range; ``value`` is a price per hour or a multiplier."""

    start_time: str
    end_time: str
    value: float = 0.0
    capacity: Optional[CapacityBounds] = None


@dataclass(frozen=True)
class DurationPackage:
    duration_hours: float
    total_price: float
    description: str = ""

    @property
    def hourly_rate(self) -> float:
        return self.total_price / self.duration_hours


@dataclass(frozen=True)
class PolicyLayer:
    id: str
    name: str
    scope: Scope
    kind: LayerKind
    effective_from: datetime
    priority: int = 0
    tie_break: TieBreak = TieBreak.PRIORITY
    effective_to: Optional[datetime] = None
    recurrence: Recurrence = field(default_factory=Recurrence)
    windows: tuple[PolicyWindow, ...] = ()
    packages: tuple[DurationPackage, ...] = ()
    category: LayerCategory = LayerCategory.RATE
    active: bool = True
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    description: str = ""
    surge_config_id: Optional[str] = None
    target_hour_start: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    superseded_reason: Optional[str] = None


@dataclass(frozen=True)
class TimeSlot:
    start_time: str
    end_time: str


@dataclass(frozen=True)
class Blackout:
    id: str
    date: date
    type: BlackoutType = BlackoutType.FULL_DAY
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    recurring_yearly: bool = False
    recurring_until: Optional[date] = None
    cancelled: bool = False
    reason: str = ""


@dataclass(frozen=True)
class OperatingHours:
    """Weekly schedule plus blackouts.

    A day missing from ``weekly_schedule`` inherits from the parent; an empty
    tuple marks the day closed.
    """

    weekly_schedule: Mapping[DayOfWeek, tuple[TimeSlot, ...]] = field(default_factory=dict)
    blackouts: tuple[Blackout, ...] = ()


@dataclass(frozen=True)
class HourlyCapacityOverride:
    local_date: date
    hour: int
    bounds: CapacityBounds


@dataclass(frozen=True)
class CapacityAllocation:
    """Static capacity split stored on a bookable node."""

    transient: float = 0.0
    events: float = 0.0
    reserved: float = 0.0
    unavailable: float = 0.0
    ready_to_use: float = 0.0

    @property
    def total(self) -> float:
        return self.transient + self.events + self.reserved + self.unavailable + self.ready_to_use


@dataclass(frozen=True)
class HierarchyNode:
    id: str
    name: str
    level: HierarchyLevel
    parent_id: Optional[str] = None
    timezone: Optional[str] = None
    default_hourly_rate: Optional[float] = None
    default_capacity: Optional[CapacityBounds] = None
    operating_hours: Optional[OperatingHours] = None
    capacity_allocation: Optional[CapacityAllocation] = None
    hourly_capacity_overrides: tuple[HourlyCapacityOverride, ...] = ()

    @property
    def scope(self) -> Scope:
        return Scope(level=self.level, entity_id=self.id)


@dataclass(frozen=True)
class DemandSupply:
    current_demand: float
    current_supply: float
    historical_avg_pressure: float


@dataclass(frozen=True)
class SurgeParams:
    alpha: float = 0.3
    min_multiplier: float = 0.75
    max_multiplier: float = 1.8
    ema_alpha: float = 0.3


@dataclass(frozen=True)
class SurgeConfig:
    id: str
    name: str
    scope: Scope
    demand_supply: DemandSupply
    surge_params: SurgeParams
    effective_from: datetime
    effective_to: Optional[datetime] = None
    priority: int = 0
    windows: tuple[PolicyWindow, ...] = ()
    surge_duration_hours: int = 1
    active: bool = True
    materialized_layer_id: Optional[str] = None
    last_materialized_at: Optional[datetime] = None
    last_smoothed_pressure: Optional[float] = None


@dataclass(frozen=True)
class DemandSnapshot:
    scope: Scope
    hour_start: datetime
    bookings_count: int
    total_attendees: int
    available_capacity: float
    demand_pressure: float
    historical_avg_pressure: float
    timestamp: datetime


@dataclass(frozen=True)
class Segment:
    """One hour-aligned slice of a booking interval."""

    start: datetime
    end: datetime
    local_time: str
    local_date: date
    day_of_week: DayOfWeek
    duration_hours: float
