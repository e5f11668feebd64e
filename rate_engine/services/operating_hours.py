"""Merge operating hours and blackouts down an ancestor chain.

Each day of the week resolves to the definition of the nearest ancestor that
declares it; a day nobody declares is closed. Blackouts accumulate across the
chain keyed by id, so a descendant can replace or cancel an inherited record
without touching the ancestor that owns it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Mapping, Optional, Sequence

from rate_engine.domain.models import (
    Blackout,
    BlackoutType,
    DayOfWeek,
    HierarchyNode,
    TimeSlot,
)
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import parse_local_time


logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedDay:
    day: DayOfWeek
    slots: tuple[TimeSlot, ...]
    source_entity_name: Optional[str]
    is_inherited: bool
    is_override: bool

    @property
    def is_closed(self) -> bool:
        return not self.slots


@dataclass(frozen=True)
class ResolvedBlackout:
    blackout: Blackout
    source_entity_name: str
    is_inherited: bool

    def applies_on(self, local_date: date) -> bool:
        origin = self.blackout.date
        if local_date == origin:
            return True
        if not self.blackout.recurring_yearly:
            return False
        if local_date < origin:
            return False
        if self.blackout.recurring_until is not None and local_date > self.blackout.recurring_until:
            return False
        return (local_date.month, local_date.day) == (origin.month, origin.day)

    def covers(self, local_date: date, minute_of_day: int) -> bool:
        if not self.applies_on(local_date):
            return False
        if self.blackout.type is BlackoutType.FULL_DAY:
            return True
        if self.blackout.start_time is None or self.blackout.end_time is None:
            return True
        start = parse_local_time(self.blackout.start_time)
        end = parse_local_time(self.blackout.end_time)
        return start <= minute_of_day < end


@dataclass(frozen=True)
class ResolvedOperatingHours:
    days: Mapping[DayOfWeek, ResolvedDay]
    blackouts: tuple[ResolvedBlackout, ...]
    has_schedule: bool

    def day(self, day: DayOfWeek) -> ResolvedDay:
        return self.days[day]

    def is_open_at(self, local_date: date, local_time: str) -> bool:
        """Weekly schedule check only; hierarchies without any schedule are always open."""
        if not self.has_schedule:
            return True
        minute = parse_local_time(local_time)
        resolved = self.days[DayOfWeek.from_date(local_date)]
        return any(
            parse_local_time(slot.start_time) <= minute < parse_local_time(slot.end_time)
            for slot in resolved.slots
        )

    def blackout_at(self, local_date: date, local_time: str) -> Optional[ResolvedBlackout]:
        minute = parse_local_time(local_time)
        for entry in self.blackouts:
            if entry.covers(local_date, minute):
                return entry
        return None

    def unavailability_reason(self, local_date: date, local_time: str) -> Optional[str]:
        blackout = self.blackout_at(local_date, local_time)
        if blackout is not None:
            label = blackout.blackout.reason or blackout.blackout.id
            return f"Blackout '{label}' from {blackout.source_entity_name}"
        if not self.is_open_at(local_date, local_time):
            resolved = self.days[DayOfWeek.from_date(local_date)]
            if resolved.is_closed:
                return f"Closed on {resolved.day.value.title()}"
            return f"Outside operating hours on {resolved.day.value.title()}"
        return None


def resolve_operating_hours(chain: Sequence[HierarchyNode]) -> ResolvedOperatingHours:
    """Resolve the effective schedule for the last node of a root-to-leaf chain."""
    if not chain:
        raise ValueError("ancestor chain must contain at least one node")
    leaf = chain[-1]

    running: dict[DayOfWeek, tuple[tuple[TimeSlot, ...], HierarchyNode, int]] = {}
    blackouts_by_id: dict[str, tuple[Blackout, HierarchyNode]] = {}
    has_schedule = False

    for node in chain:
        hours = node.operating_hours
        if hours is None:
            continue
        for day, slots in hours.weekly_schedule.items():
            has_schedule = True
            definitions = running[day][2] + 1 if day in running else 1
            running[day] = (tuple(slots), node, definitions)
        for blackout in hours.blackouts:
            blackouts_by_id[blackout.id] = (blackout, node)

    days: dict[DayOfWeek, ResolvedDay] = {}
    for day in DayOfWeek:
        if day not in running:
            days[day] = ResolvedDay(
                day=day,
                slots=(),
                source_entity_name=None,
                is_inherited=False,
                is_override=False,
            )
            continue
        slots, source, definitions = running[day]
        defined_by_leaf = source.id == leaf.id
        days[day] = ResolvedDay(
            day=day,
            slots=slots,
            source_entity_name=source.name,
            is_inherited=not defined_by_leaf,
            is_override=defined_by_leaf and definitions > 1,
        )

    blackouts = tuple(
        ResolvedBlackout(
            blackout=blackout,
            source_entity_name=owner.name,
            is_inherited=owner.id != leaf.id,
        )
        for blackout, owner in blackouts_by_id.values()
        if not blackout.cancelled
    )
    cancelled = len(blackouts_by_id) - len(blackouts)
    logger.debug(
        "Operating hours resolved | entity=%s | has_schedule=%s | blackouts=%s | cancelled=%s",
        leaf.id,
        has_schedule,
        len(blackouts),
        cancelled,
    )
    return ResolvedOperatingHours(days=days, blackouts=blackouts, has_schedule=has_schedule)
