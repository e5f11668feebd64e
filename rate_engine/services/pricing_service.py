"""Hour-by-hour price resolution with surge uplift and a decision audit trail."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from rate_engine.domain.models import (
    DurationPackage,
    HierarchyNode,
    LayerCategory,
    LayerKind,
    PolicyLayer,
    Segment,
)
from rate_engine.services.conflict_resolution import (
    Candidate,
    Rejection,
    gather_candidates,
    select_winner,
    window_covering,
)
from rate_engine.services.policy_collector import ranking_key
from rate_engine.services.segmentation import total_hours
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)

SOURCE_RATE_SHEET = "RATE_SHEET"
SOURCE_DEFAULT_RATE = "DEFAULT_RATE"
DEFAULT_RATE_NAME = "Default Rate"


class PricingError(Exception):
    """Base exception for price resolution failures."""


class NoApplicablePolicyError(PricingError):
    """Raised when a segment has no matching layer and no ancestor default rate."""

    def __init__(self, message: str, decision_log: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.decision_log = decision_log


@dataclass(frozen=True)
class PricedSegment:
    start: str
    end: str
    local_time: str
    hours: float
    price_per_hour: float
    subtotal: float
    ratesheet_id: Optional[str]
    ratesheet_name: str
    applied_rule: str
    source: str
    level: Optional[str]
    base_price_per_hour: float
    surge_multiplier: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "local_time": self.local_time,
            "hours": self.hours,
            "price_per_hour": self.price_per_hour,
            "subtotal": self.subtotal,
            "ratesheet_id": self.ratesheet_id,
            "ratesheet_name": self.ratesheet_name,
            "applied_rule": self.applied_rule,
            "source": self.source,
            "level": self.level,
            "base_price_per_hour": self.base_price_per_hour,
            "surge_multiplier": self.surge_multiplier,
        }


@dataclass(frozen=True)
class LayerUsage:
    layer_id: str
    layer_name: str
    times_applied: int
    total_revenue: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "layer_id": self.layer_id,
            "layer_name": self.layer_name,
            "times_applied": self.times_applied,
            "total_revenue": self.total_revenue,
        }


@dataclass(frozen=True)
class PricingResult:
    total_price: float
    currency: str
    total_hours: float
    segments: tuple[PricedSegment, ...]
    decision_log: tuple[dict[str, Any], ...]
    usage: tuple[LayerUsage, ...]
    rate_sheet_segments: int
    default_rate_segments: int


def choose_package(packages: Sequence[DurationPackage], booking_hours: float) -> DurationPackage:
    """Longest package that fits inside the booking, else the shortest one."""
    fitting = [package for package in packages if package.duration_hours <= booking_hours + 1e-9]
    if fitting:
        return max(fitting, key=lambda package: package.duration_hours)
    return min(packages, key=lambda package: package.duration_hours)


def nearest_default_rate(chain: Sequence[HierarchyNode]) -> Optional[HierarchyNode]:
    for node in sorted(chain, key=lambda item: -item.level.rank):
        if node.default_hourly_rate is not None:
            return node
    return None


def _build_rate_candidate(booking_hours: float):
    def build(layer: PolicyLayer, segment: Segment) -> Optional[Candidate]:
        match layer.kind:
            case LayerKind.TIME_WINDOW:
                window = window_covering(layer.windows, segment.local_time)
                if window is None:
                    return None
                return Candidate(
                    layer=layer,
                    value=float(window.value),
                    rule=f"{window.start_time}-{window.end_time} @ {window.value:.2f}/hr",
                    window=window,
                )
            case LayerKind.SURGE_MULTIPLIER:
                window = window_covering(layer.windows, segment.local_time)
                if window is None:
                    return None
                return Candidate(
                    layer=layer,
                    value=float(window.value),
                    rule=f"Surge x{window.value:.4f} ({window.start_time}-{window.end_time})",
                    window=window,
                )
            case LayerKind.DURATION_PACKAGE:
                if not layer.packages:
                    return None
                if layer.windows and window_covering(layer.windows, segment.local_time) is None:
                    return None
                package = choose_package(layer.packages, booking_hours)
                return Candidate(
                    layer=layer,
                    value=package.hourly_rate,
                    rule=(
                        f"Package {package.duration_hours:g}h for {package.total_price:.2f} "
                        f"({package.hourly_rate:.2f}/hr)"
                    ),
                )
        raise ValueError(f"unhandled layer kind {layer.kind!r}")

    return build


def _candidate_entry(candidate: Candidate) -> dict[str, Any]:
    return {
        "layer_id": candidate.layer.id,
        "layer_name": candidate.layer.name,
        "kind": candidate.layer.kind.value,
        "level": candidate.layer.scope.level.value,
        "priority": candidate.layer.priority,
        "value": candidate.value,
        "rule": candidate.rule,
    }


def _rejection_entry(rejection: Rejection) -> dict[str, Any]:
    return {
        "layer_id": rejection.layer_id,
        "layer_name": rejection.layer_name,
        "reason": rejection.reason,
    }


def price_segments(
    chain: Sequence[HierarchyNode],
    layers: Sequence[PolicyLayer],
    segments: Sequence[Segment],
    currency: str = "USD",
    decimal_places: int = 2,
) -> PricingResult:
    """Resolve a price for every segment; abort if any segment has nothing to charge."""
    rate_layers = [layer for layer in layers if layer.category is LayerCategory.RATE]
    booking_hours = total_hours(segments)
    build = _build_rate_candidate(booking_hours)
    default_node = nearest_default_rate(chain)

    priced: list[PricedSegment] = []
    decision_log: list[dict[str, Any]] = []
    usage: "OrderedDict[str, list[Any]]" = OrderedDict()

    for segment in segments:
        candidates, excluded = gather_candidates(rate_layers, segment, build)
        base_candidates = [c for c in candidates if c.layer.kind is not LayerKind.SURGE_MULTIPLIER]
        surge_candidates = sorted(
            (c for c in candidates if c.layer.kind is LayerKind.SURGE_MULTIPLIER),
            key=lambda candidate: ranking_key(candidate.layer),
        )
        entry: dict[str, Any] = {
            "segment_start": segment.start.isoformat(),
            "segment_end": segment.end.isoformat(),
            "local_time": segment.local_time,
            "candidates": [_candidate_entry(c) for c in candidates],
            "rejected": [_rejection_entry(r) for r in excluded],
            "winner": None,
            "surge": None,
            "source": None,
        }

        if base_candidates:
            selection = select_winner(base_candidates)
            winner = selection.winner
            base_price = winner.value
            ratesheet_id: Optional[str] = winner.layer.id
            ratesheet_name = winner.layer.name
            applied_rule = winner.rule
            source = SOURCE_RATE_SHEET
            level: Optional[str] = winner.layer.scope.level.value
            entry["winner"] = _candidate_entry(winner)
            entry["strategy"] = selection.strategy.value
            entry["rejected"].extend(_rejection_entry(r) for r in selection.rejected)
        elif default_node is not None:
            base_price = float(default_node.default_hourly_rate)
            ratesheet_id = None
            ratesheet_name = DEFAULT_RATE_NAME
            applied_rule = f"No matching time window; default rate from {default_node.name}"
            source = SOURCE_DEFAULT_RATE
            level = default_node.level.value
            entry["winner"] = {
                "layer_id": None,
                "layer_name": DEFAULT_RATE_NAME,
                "level": level,
                "entity_id": default_node.id,
                "value": base_price,
                "rule": applied_rule,
            }
        else:
            entry["source"] = "NONE"
            decision_log.append(entry)
            leaf_id = chain[-1].id if chain else "unknown"
            logger.warning(
                "No applicable pricing policy | entity=%s | segment_start=%s",
                leaf_id,
                segment.start.isoformat(),
            )
            raise NoApplicablePolicyError(
                f"No rate layer or default hourly rate applies to entity {leaf_id} "
                f"at {segment.start.isoformat()}",
                decision_log,
            )
        entry["source"] = source

        price_per_hour = base_price
        multiplier: Optional[float] = None
        if surge_candidates:
            surge = surge_candidates[0]
            multiplier = surge.value
            price_per_hour = base_price * multiplier
            applied_rule = f"{applied_rule}; {surge.rule}"
            entry["surge"] = {
                "layer_id": surge.layer.id,
                "layer_name": surge.layer.name,
                "multiplier": multiplier,
                "base_price_per_hour": base_price,
                "adjusted_price_per_hour": price_per_hour,
            }
            entry["rejected"].extend(
                {
                    "layer_id": other.layer.id,
                    "layer_name": other.layer.name,
                    "reason": f"Outranked by surge layer {surge.layer.id}",
                }
                for other in surge_candidates[1:]
            )

        subtotal = price_per_hour * segment.duration_hours
        priced.append(
            PricedSegment(
                start=segment.start.isoformat(),
                end=segment.end.isoformat(),
                local_time=segment.local_time,
                hours=segment.duration_hours,
                price_per_hour=round(price_per_hour, decimal_places),
                subtotal=round(subtotal, decimal_places),
                ratesheet_id=ratesheet_id,
                ratesheet_name=ratesheet_name,
                applied_rule=applied_rule,
                source=source,
                level=level,
                base_price_per_hour=round(base_price, decimal_places),
                surge_multiplier=multiplier,
            )
        )
        decision_log.append(entry)

        usage_key = ratesheet_id or DEFAULT_RATE_NAME
        bucket = usage.setdefault(usage_key, [ratesheet_name, 0, 0.0])
        bucket[1] += 1
        bucket[2] += subtotal

    total = round(sum(segment.subtotal for segment in priced), decimal_places)
    rate_sheet_segments = sum(1 for segment in priced if segment.source == SOURCE_RATE_SHEET)
    logger.info(
        "Pricing resolved | segments=%s | rate_sheet_segments=%s | default_segments=%s | total=%.2f",
        len(priced),
        rate_sheet_segments,
        len(priced) - rate_sheet_segments,
        total,
    )
    return PricingResult(
        total_price=total,
        currency=currency,
        total_hours=booking_hours,
        segments=tuple(priced),
        decision_log=tuple(decision_log),
        usage=tuple(
            LayerUsage(
                layer_id=layer_id,
                layer_name=name,
                times_applied=count,
                total_revenue=round(revenue, decimal_places),
            )
            for layer_id, (name, count, revenue) in usage.items()
        ),
        rate_sheet_segments=rate_sheet_segments,
        default_rate_segments=len(priced) - rate_sheet_segments,
    )
