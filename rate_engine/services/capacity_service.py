"""Hour-by-hour capacity resolution folded with operating hours and blackouts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from rate_engine.domain.models import (
    CapacityBounds,
    HierarchyLevel,
    HierarchyNode,
    LayerCategory,
    LayerKind,
    PolicyLayer,
    Segment,
)
from rate_engine.services.conflict_resolution import (
    Candidate,
    gather_candidates,
    select_winner,
    window_covering,
)
from rate_engine.services.operating_hours import ResolvedOperatingHours, resolve_operating_hours
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)

SOURCE_OPERATING_HOURS = "OPERATING_HOURS"
SOURCE_HOURLY_OVERRIDE = "HOURLY_OVERRIDE"
SOURCE_CAPACITY_SHEET = "CAPACITY_SHEET"
SOURCE_DEFAULT_CAPACITY = "DEFAULT_CAPACITY"
SOURCE_SYSTEM_FALLBACK = "SYSTEM_FALLBACK"


@dataclass(frozen=True)
class CapacitySegment:
    start: str
    end: str
    local_time: str
    hours: float
    min_capacity: int
    max_capacity: int
    default_capacity: int
    allocated_capacity: int
    is_available: bool
    source: str
    layer_id: Optional[str] = None
    layer_name: Optional[str] = None
    level: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ready_to_use(self) -> int:
        if not self.is_available:
            return 0
        return max(0, self.max_capacity - self.allocated_capacity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "local_time": self.local_time,
            "hours": self.hours,
            "min_capacity": self.min_capacity,
            "max_capacity": self.max_capacity,
            "default_capacity": self.default_capacity,
            "allocated_capacity": self.allocated_capacity,
            "ready_to_use": self.ready_to_use,
            "is_available": self.is_available,
            "source": self.source,
            "layer_id": self.layer_id,
            "layer_name": self.layer_name,
            "level": self.level,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AllocationBreakdown:
    transient: int
    events: int
    reserved: int
    unavailable: int
    ready_to_use: int
    percentages: dict[str, int]
    total_hours: float
    available_hours: float
    unavailable_hours: float
    derived: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "allocated": {
                "transient": self.transient,
                "events": self.events,
                "reserved": self.reserved,
            },
            "unallocated": {
                "unavailable": self.unavailable,
                "ready_to_use": self.ready_to_use,
            },
            "percentages": dict(self.percentages),
            "metadata": {
                "total_hours": self.total_hours,
                "available_hours": self.available_hours,
                "unavailable_hours": self.unavailable_hours,
                "derived_from_segments": self.derived,
            },
        }


@dataclass(frozen=True)
class CapacityResult:
    segments: tuple[CapacitySegment, ...]
    decision_log: tuple[dict[str, Any], ...]
    summary: dict[str, float]
    breakdown: AllocationBreakdown


def nearest_default_capacity(chain: Sequence[HierarchyNode]) -> Optional[HierarchyNode]:
    for node in sorted(chain, key=lambda item: -item.level.rank):
        if node.default_capacity is not None:
            return node
    return None


def _capacity_candidate(layer: PolicyLayer, segment: Segment) -> Optional[Candidate]:
    if layer.kind is not LayerKind.TIME_WINDOW:
        return None
    window = window_covering(layer.windows, segment.local_time)
    if window is None or window.capacity is None:
        return None
    bounds = window.capacity
    return Candidate(
        layer=layer,
        value=float(bounds.max_capacity),
        rule=(
            f"{window.start_time}-{window.end_time} capacity "
            f"{bounds.min_capacity}-{bounds.max_capacity}"
        ),
        window=window,
    )


def _hourly_override(leaf: HierarchyNode, segment: Segment) -> Optional[CapacityBounds]:
    hour = int(segment.local_time[:2])
    for override in leaf.hourly_capacity_overrides:
        if override.local_date == segment.local_date and override.hour == hour:
            return override.bounds
    return None


def _segment(segment: Segment, bounds: CapacityBounds, **extra: Any) -> CapacitySegment:
    return CapacitySegment(
        start=segment.start.isoformat(),
        end=segment.end.isoformat(),
        local_time=segment.local_time,
        hours=segment.duration_hours,
        min_capacity=bounds.min_capacity,
        max_capacity=bounds.max_capacity,
        default_capacity=bounds.default_capacity,
        allocated_capacity=bounds.allocated_capacity,
        **extra,
    )


def _percentages(values: dict[str, float]) -> dict[str, int]:
    total = sum(values.values())
    safe_total = total if total > 0 else 1.0
    percentages = {key: int(round(value / safe_total * 100)) for key, value in values.items()}
    assigned = sum(percentages.values())
    if assigned > 0:
        percentages["ready_to_use"] += 100 - assigned
        if percentages["ready_to_use"] < 0:
            excess = -percentages["ready_to_use"]
            percentages["ready_to_use"] = 0
            largest = max(percentages, key=lambda key: percentages[key])
            percentages[largest] -= excess
    return percentages


def build_allocation_breakdown(
    leaf: HierarchyNode,
    segments: Sequence[CapacitySegment],
) -> AllocationBreakdown:
    """Use the leaf's stored split when present, otherwise derive one from segments."""
    total_hours = float(sum(segment.hours for segment in segments))
    available_hours = float(sum(segment.hours for segment in segments if segment.is_available))
    unavailable_hours = total_hours - available_hours

    stored = leaf.capacity_allocation
    if stored is not None and stored.total > 0:
        values = {
            "transient": stored.transient,
            "events": stored.events,
            "reserved": stored.reserved,
            "unavailable": stored.unavailable,
            "ready_to_use": stored.ready_to_use,
        }
        derived = False
    else:
        values = dict.fromkeys(("transient", "events", "reserved", "unavailable", "ready_to_use"), 0.0)
        weight_total = total_hours if total_hours > 0 else 1.0
        for segment in segments:
            weight = segment.hours / weight_total
            if not segment.is_available:
                values["unavailable"] += segment.max_capacity * weight
                continue
            if segment.source == SOURCE_CAPACITY_SHEET and segment.level == HierarchyLevel.VENUE_EVENT.value:
                values["events"] += segment.allocated_capacity * weight
            else:
                values["transient"] += segment.allocated_capacity * weight
            values["ready_to_use"] += segment.ready_to_use * weight
        derived = True

    rounded = {key: int(round(value)) for key, value in values.items()}
    return AllocationBreakdown(
        transient=rounded["transient"],
        events=rounded["events"],
        reserved=rounded["reserved"],
        unavailable=rounded["unavailable"],
        ready_to_use=rounded["ready_to_use"],
        percentages=_percentages(values),
        total_hours=total_hours,
        available_hours=available_hours,
        unavailable_hours=unavailable_hours,
        derived=derived,
    )


def _summarize(segments: Sequence[CapacitySegment]) -> dict[str, float]:
    weights = np.array([segment.hours for segment in segments], dtype=float)
    columns = {
        "avg_min_capacity": [segment.min_capacity for segment in segments],
        "avg_max_capacity": [segment.max_capacity for segment in segments],
        "avg_default_capacity": [segment.default_capacity for segment in segments],
        "avg_allocated_capacity": [segment.allocated_capacity for segment in segments],
    }
    if weights.size == 0 or weights.sum() <= 0:
        return dict.fromkeys(columns, 0.0)
    return {
        key: round(float(np.average(np.array(values, dtype=float), weights=weights)), 2)
        for key, values in columns.items()
    }


def resolve_capacity(
    chain: Sequence[HierarchyNode],
    layers: Sequence[PolicyLayer],
    segments: Sequence[Segment],
    fallback: CapacityBounds,
    operating_hours: Optional[ResolvedOperatingHours] = None,
) -> CapacityResult:
    """Resolve capacity bounds per segment.

    Order per segment: operating hours and blackouts, leaf hourly override,
    capacity layers, nearest ancestor default, then the configured fallback.
    """
    if not chain:
        raise ValueError("ancestor chain must contain at least one node")
    leaf = chain[-1]
    hours = operating_hours or resolve_operating_hours(chain)
    capacity_layers = [layer for layer in layers if layer.category is LayerCategory.CAPACITY]
    default_node = nearest_default_capacity(chain)
    configured = default_node.default_capacity if default_node is not None else fallback

    resolved: list[CapacitySegment] = []
    decision_log: list[dict[str, Any]] = []

    for segment in segments:
        entry: dict[str, Any] = {
            "segment_start": segment.start.isoformat(),
            "segment_end": segment.end.isoformat(),
            "local_time": segment.local_time,
            "candidates": [],
            "rejected": [],
            "winner": None,
        }
        reason = hours.unavailability_reason(segment.local_date, segment.local_time)
        if reason is not None:
            closed = CapacityBounds(
                min_capacity=0,
                max_capacity=configured.max_capacity,
                default_capacity=0,
                allocated_capacity=0,
            )
            resolved.append(
                _segment(segment, closed, is_available=False, source=SOURCE_OPERATING_HOURS, reason=reason)
            )
            entry["source"] = SOURCE_OPERATING_HOURS
            entry["reason"] = reason
            decision_log.append(entry)
            continue

        override = _hourly_override(leaf, segment)
        if override is not None:
            resolved.append(
                _segment(
                    segment,
                    override,
                    is_available=True,
                    source=SOURCE_HOURLY_OVERRIDE,
                    layer_name="Hourly Override",
                    level=leaf.level.value,
                )
            )
            entry["source"] = SOURCE_HOURLY_OVERRIDE
            decision_log.append(entry)
            continue

        candidates, excluded = gather_candidates(capacity_layers, segment, _capacity_candidate)
        entry["candidates"] = [
            {
                "layer_id": c.layer.id,
                "layer_name": c.layer.name,
                "level": c.layer.scope.level.value,
                "priority": c.layer.priority,
                "max_capacity": c.value,
                "rule": c.rule,
            }
            for c in candidates
        ]
        entry["rejected"] = [
            {"layer_id": r.layer_id, "layer_name": r.layer_name, "reason": r.reason} for r in excluded
        ]
        if candidates:
            selection = select_winner(candidates)
            winner = selection.winner
            resolved.append(
                _segment(
                    segment,
                    winner.window.capacity,
                    is_available=True,
                    source=SOURCE_CAPACITY_SHEET,
                    layer_id=winner.layer.id,
                    layer_name=winner.layer.name,
                    level=winner.layer.scope.level.value,
                )
            )
            entry["source"] = SOURCE_CAPACITY_SHEET
            entry["strategy"] = selection.strategy.value
            entry["winner"] = {"layer_id": winner.layer.id, "layer_name": winner.layer.name}
            entry["rejected"].extend(
                {"layer_id": r.layer_id, "layer_name": r.layer_name, "reason": r.reason}
                for r in selection.rejected
            )
        elif default_node is not None:
            resolved.append(
                _segment(
                    segment,
                    default_node.default_capacity,
                    is_available=True,
                    source=SOURCE_DEFAULT_CAPACITY,
                    layer_name=f"Default capacity ({default_node.name})",
                    level=default_node.level.value,
                )
            )
            entry["source"] = SOURCE_DEFAULT_CAPACITY
            entry["winner"] = {"entity_id": default_node.id, "level": default_node.level.value}
        else:
            resolved.append(
                _segment(segment, fallback, is_available=True, source=SOURCE_SYSTEM_FALLBACK)
            )
            entry["source"] = SOURCE_SYSTEM_FALLBACK
        decision_log.append(entry)

    breakdown = build_allocation_breakdown(leaf, resolved)
    logger.info(
        "Capacity resolved | entity=%s | segments=%s | available_hours=%.2f | unavailable_hours=%.2f",
        leaf.id,
        len(resolved),
        breakdown.available_hours,
        breakdown.unavailable_hours,
    )
    return CapacityResult(
        segments=tuple(resolved),
        decision_log=tuple(decision_log),
        summary=_summarize(resolved),
        breakdown=breakdown,
    )
