from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from rate_engine.domain.models import (
    Blackout,
    CapacityAllocation,
    CapacityBounds,
    DayOfWeek,
    HierarchyLevel,
    HierarchyNode,
    HourlyCapacityOverride,
    LayerCategory,
    LayerKind,
    OperatingHours,
    PolicyLayer,
    PolicyWindow,
    Scope,
    TimeSlot,
)
from rate_engine.services.capacity_service import resolve_capacity
from rate_engine.services.segmentation import split_into_segments


FALLBACK = CapacityBounds(min_capacity=0, max_capacity=100, default_capacity=50, allocated_capacity=0)
EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)
WEEKDAYS = (DayOfWeek.MONDAY, DayOfWeek.TUESDAY, DayOfWeek.WEDNESDAY, DayOfWeek.THURSDAY, DayOfWeek.FRIDAY)


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _chain(
    site_hours=None,
    account_capacity=None,
    leaf_level=HierarchyLevel.SUBAREA,
    **leaf_fields,
) -> list[HierarchyNode]:
    return [
        HierarchyNode(
            id="acct",
            name="Account",
            level=HierarchyLevel.ACCOUNT,
            default_capacity=account_capacity,
        ),
        HierarchyNode(
            id="site",
            name="Site",
            level=HierarchyLevel.SITE,
            parent_id="acct",
            operating_hours=site_hours,
        ),
        HierarchyNode(id="leaf", name="Leaf", level=leaf_level, parent_id="site", **leaf_fields),
    ]


def _weekday_hours(start: str = "08:00", end: str = "18:00", blackouts=()) -> OperatingHours:
    return OperatingHours(
        weekly_schedule={day: (TimeSlot(start, end),) for day in WEEKDAYS},
        blackouts=tuple(blackouts),
    )


def _capacity_layer(bounds: CapacityBounds, level=HierarchyLevel.SUBAREA, start="09:00", end="12:00"):
    return PolicyLayer(
        id=f"cap-{level.value.lower()}",
        name="Capacity Sheet",
        scope=Scope(level, "leaf"),
        kind=LayerKind.TIME_WINDOW,
        category=LayerCategory.CAPACITY,
        effective_from=EPOCH,
        windows=(PolicyWindow(start, end, capacity=bounds),),
    )


def _resolve(chain, layers, start, end):
    return resolve_capacity(chain, layers, split_into_segments(start, end, "UTC"), FALLBACK)


# --- Operating hours ---

def test_closed_day_marks_every_segment_unavailable():
    # 2025-03-09 is a Sunday
    result = _resolve(_chain(site_hours=_weekday_hours()), [], _utc(2025, 3, 9, 10), _utc(2025, 3, 9, 12))

    assert [segment.is_available for segment in result.segments] == [False, False]
    assert {segment.reason for segment in result.segments} == {"Closed on Sunday"}
    assert all(segment.ready_to_use == 0 for segment in result.segments)
    assert all(segment.source == "OPERATING_HOURS" for segment in result.segments)


def test_hours_outside_schedule_are_unavailable():
    result = _resolve(_chain(site_hours=_weekday_hours()), [], _utc(2025, 3, 4, 17), _utc(2025, 3, 4, 19))

    first, second = result.segments
    assert first.is_available
    assert not second.is_available
    assert second.reason == "Outside operating hours on Tuesday"


def test_blackout_overrides_open_schedule():
    hours = _weekday_hours(blackouts=[Blackout(id="holiday", date=date(2025, 3, 4), reason="Holiday")])

    result = _resolve(_chain(site_hours=hours), [], _utc(2025, 3, 4, 10), _utc(2025, 3, 4, 11))

    segment = result.segments[0]
    assert not segment.is_available
    assert segment.reason == "Blackout 'Holiday' from Site"
    assert result.decision_log[0]["source"] == "OPERATING_HOURS"


# --- Resolution order ---

def test_capacity_sheet_then_default_then_fallback():
    sheet = _capacity_layer(CapacityBounds(5, 60, 40, 10))
    with_default = _chain(account_capacity=CapacityBounds(0, 200, 100, 0))

    result = _resolve(with_default, [sheet], _utc(2025, 3, 4, 11), _utc(2025, 3, 4, 13))
    bare = _resolve(_chain(), [sheet], _utc(2025, 3, 4, 11), _utc(2025, 3, 4, 13))

    assert [segment.source for segment in result.segments] == ["CAPACITY_SHEET", "DEFAULT_CAPACITY"]
    assert [segment.max_capacity for segment in result.segments] == [60, 200]
    assert result.segments[0].layer_id == "cap-subarea"
    assert [segment.source for segment in bare.segments] == ["CAPACITY_SHEET", "SYSTEM_FALLBACK"]
    assert bare.segments[1].max_capacity == FALLBACK.max_capacity


def test_hourly_override_beats_capacity_sheet():
    sheet = _capacity_layer(CapacityBounds(5, 60, 40, 10))
    override = HourlyCapacityOverride(
        local_date=date(2025, 3, 4),
        hour=10,
        bounds=CapacityBounds(1, 30, 20, 5),
    )

    result = _resolve(
        _chain(hourly_capacity_overrides=(override,)),
        [sheet],
        _utc(2025, 3, 4, 10),
        _utc(2025, 3, 4, 12),
    )

    assert [segment.source for segment in result.segments] == ["HOURLY_OVERRIDE", "CAPACITY_SHEET"]
    assert result.segments[0].max_capacity == 30
    assert result.segments[0].ready_to_use == 25


def test_non_capacity_layers_are_ignored():
    rate_layer = PolicyLayer(
        id="rate",
        name="Rate",
        scope=Scope(HierarchyLevel.SUBAREA, "leaf"),
        kind=LayerKind.TIME_WINDOW,
        effective_from=EPOCH,
        windows=(PolicyWindow("00:00", "24:00", 99.0),),
    )

    result = _resolve(_chain(), [rate_layer], _utc(2025, 3, 4, 10), _utc(2025, 3, 4, 11))

    assert result.segments[0].source == "SYSTEM_FALLBACK"


# --- Allocation breakdown ---

def test_derived_breakdown_percentages_sum_to_one_hundred():
    chain = _chain(
        site_hours=_weekday_hours("08:00", "11:00"),
        account_capacity=CapacityBounds(0, 100, 50, 20),
    )

    result = _resolve(chain, [], _utc(2025, 3, 4, 10), _utc(2025, 3, 4, 12))

    breakdown = result.breakdown
    assert breakdown.derived
    assert breakdown.transient == 10
    assert breakdown.unavailable == 50
    assert breakdown.ready_to_use == 40
    assert breakdown.percentages == {
        "transient": 10,
        "events": 0,
        "reserved": 0,
        "unavailable": 50,
        "ready_to_use": 40,
    }
    assert sum(breakdown.percentages.values()) == 100
    assert breakdown.available_hours == pytest.approx(1.0)
    assert breakdown.unavailable_hours == pytest.approx(1.0)


def test_venue_event_capacity_sheet_counts_as_events():
    sheet = _capacity_layer(CapacityBounds(0, 90, 60, 30), level=HierarchyLevel.VENUE_EVENT)

    result = _resolve(
        _chain(leaf_level=HierarchyLevel.VENUE_EVENT),
        [sheet],
        _utc(2025, 3, 4, 10),
        _utc(2025, 3, 4, 11),
    )

    assert result.breakdown.events == 30
    assert result.breakdown.transient == 0
    assert result.breakdown.ready_to_use == 60


def test_stored_static_split_takes_precedence():
    allocation = CapacityAllocation(transient=10, events=20, reserved=5, unavailable=0, ready_to_use=65)

    result = _resolve(_chain(capacity_allocation=allocation), [], _utc(2025, 3, 4, 10), _utc(2025, 3, 4, 11))

    breakdown = result.breakdown
    assert not breakdown.derived
    assert breakdown.to_dict()["allocated"] == {"transient": 10, "events": 20, "reserved": 5}
    assert breakdown.percentages == {
        "transient": 10,
        "events": 20,
        "reserved": 5,
        "unavailable": 0,
        "ready_to_use": 65,
    }


def test_rounding_overflow_is_taken_from_largest_bucket():
    allocation = CapacityAllocation(transient=25.5, events=25.5, reserved=49.0, unavailable=0, ready_to_use=0)

    result = _resolve(_chain(capacity_allocation=allocation), [], _utc(2025, 3, 4, 10), _utc(2025, 3, 4, 11))

    percentages = result.breakdown.percentages
    assert percentages == {
        "transient": 26,
        "events": 26,
        "reserved": 48,
        "unavailable": 0,
        "ready_to_use": 0,
    }
    assert sum(percentages.values()) == 100


def test_summary_is_weighted_by_segment_hours():
    sheet = _capacity_layer(CapacityBounds(0, 60, 40, 0), start="10:00", end="11:00")
    chain = _chain(account_capacity=CapacityBounds(0, 200, 100, 0))

    result = _resolve(chain, [sheet], _utc(2025, 3, 4, 10, 30), _utc(2025, 3, 4, 12))

    assert result.summary["avg_max_capacity"] == pytest.approx(round((60 * 0.5 + 200 * 1.0) / 1.5, 2))
