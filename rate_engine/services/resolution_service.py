"""Combined price and capacity resolution for one entity and booking interval."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from rate_engine.domain.models import CapacityBounds, HierarchyNode, LayerCategory, PolicyLayer
from rate_engine.repository.codec import dt_to_text
from rate_engine.repository.data_repository import DataRepository
from rate_engine.services.capacity_service import CapacityResult, resolve_capacity
from rate_engine.services.operating_hours import resolve_operating_hours
from rate_engine.services.policy_collector import (
    UnknownEntityError,
    chain_scopes,
    collect_policy_layers,
)
from rate_engine.services.pricing_service import PricingResult, price_segments
from rate_engine.services.segmentation import split_into_segments
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolutionQuery:
    entity_id: str
    ancestor_chain: Sequence[HierarchyNode]
    candidate_layers: Sequence[PolicyLayer]
    start: datetime
    end: datetime
    timezone: Optional[str] = None


@dataclass(frozen=True)
class ResolutionResult:
    entity_id: str
    timezone: str
    start: datetime
    end: datetime
    pricing: PricingResult
    capacity: CapacityResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "timezone": self.timezone,
            "start": dt_to_text(self.start),
            "end": dt_to_text(self.end),
            "total_price": self.pricing.total_price,
            "currency": self.pricing.currency,
            "total_hours": self.pricing.total_hours,
            "breakdown": [segment.to_dict() for segment in self.pricing.segments],
            "decision_log": list(self.pricing.decision_log),
            "ratesheets_summary": [usage.to_dict() for usage in self.pricing.usage],
            "rate_sheet_segments": self.pricing.rate_sheet_segments,
            "default_rate_segments": self.pricing.default_rate_segments,
            "capacity_breakdown": self.capacity.breakdown.to_dict(),
            "capacity_segments": [segment.to_dict() for segment in self.capacity.segments],
            "capacity_summary": dict(self.capacity.summary),
            "capacity_decision_log": list(self.capacity.decision_log),
        }


def resolve_timezone_name(query: ResolutionQuery, settings: Settings) -> str:
    if query.timezone:
        return query.timezone
    for node in reversed(query.ancestor_chain):
        if node.timezone:
            return node.timezone
    return settings.default_timezone


def resolve(query: ResolutionQuery, settings: Optional[Settings] = None) -> ResolutionResult:
    """Pure resolution over caller-supplied hierarchy and layer records."""
    settings = settings or get_settings()
    chain = list(query.ancestor_chain)
    timezone_name = resolve_timezone_name(query, settings)

    segments = split_into_segments(query.start, query.end, timezone_name)
    rate_layers = collect_policy_layers(
        query.entity_id, chain, query.candidate_layers, query.start, query.end, LayerCategory.RATE
    )
    capacity_layers = collect_policy_layers(
        query.entity_id, chain, query.candidate_layers, query.start, query.end, LayerCategory.CAPACITY
    )

    pricing = price_segments(
        chain,
        rate_layers,
        segments,
        currency=settings.default_currency,
        decimal_places=settings.price_decimal_places,
    )
    capacity = resolve_capacity(
        chain,
        capacity_layers,
        segments,
        fallback=CapacityBounds(
            min_capacity=settings.capacity_fallback_min,
            max_capacity=settings.capacity_fallback_max,
            default_capacity=settings.capacity_fallback_default,
            allocated_capacity=settings.capacity_fallback_allocated,
        ),
        operating_hours=resolve_operating_hours(chain),
    )
    return ResolutionResult(
        entity_id=query.entity_id,
        timezone=timezone_name,
        start=query.start,
        end=query.end,
        pricing=pricing,
        capacity=capacity,
    )


class ResolutionService:
    """Fetches hierarchy and layers from the repository and runs pure resolution."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def resolve(self, query: ResolutionQuery) -> ResolutionResult:
        return resolve(query, self._settings)

    def resolve_for_entity(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        timezone: Optional[str] = None,
    ) -> ResolutionResult:
        chain = self._repository.get_ancestor_chain(entity_id)
        if not chain:
            raise UnknownEntityError(f"Entity {entity_id} not found")
        layers = self._repository.list_layers_for_scopes(chain_scopes(chain))
        logger.info(
            "Resolving stored entity | entity=%s | depth=%s | stored_layers=%s",
            entity_id,
            len(chain),
            len(layers),
        )
        return resolve(
            ResolutionQuery(
                entity_id=entity_id,
                ancestor_chain=chain,
                candidate_layers=layers,
                start=start,
                end=end,
                timezone=timezone,
            ),
            self._settings,
        )
