"""Pre-filter policy layers down to those that can touch a query interval."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from rate_engine.domain.models import (
    RETIRED_STATUSES,
    HierarchyNode,
    LayerCategory,
    PolicyLayer,
    Scope,
)
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import ensure_utc


logger = get_logger(__name__)


class UnknownEntityError(LookupError):
    """Raised when an entity id is missing from its ancestor chain or the store."""


def ranking_key(layer: PolicyLayer) -> tuple[int, int, str]:
    """Hierarchy rank dominates priority; id keeps the order deterministic."""
    return (-layer.scope.level.rank, -layer.priority, layer.id)


def chain_scopes(chain: Sequence[HierarchyNode]) -> frozenset[Scope]:
    return frozenset(node.scope for node in chain)


def overlaps_interval(layer: PolicyLayer, start: datetime, end: datetime) -> bool:
    """Inclusive overlap test; errs on the side of keeping a layer."""
    effective_from = ensure_utc(layer.effective_from)
    if effective_from > end:
        return False
    if layer.effective_to is None:
        return True
    return ensure_utc(layer.effective_to) >= start


def collect_policy_layers(
    entity_id: str,
    ancestor_chain: Sequence[HierarchyNode],
    layers: Iterable[PolicyLayer],
    start: datetime,
    end: datetime,
    category: Optional[LayerCategory] = None,
) -> list[PolicyLayer]:
    if not ancestor_chain or ancestor_chain[-1].id != entity_id:
        raise UnknownEntityError(f"entity {entity_id!r} is not the leaf of the supplied ancestor chain")

    scopes = chain_scopes(ancestor_chain)
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)

    selected = [
        layer
        for layer in layers
        if layer.scope in scopes
        and layer.active
        and layer.approval_status not in RETIRED_STATUSES
        and (category is None or layer.category is category)
        and overlaps_interval(layer, start_utc, end_utc)
    ]
    selected.sort(key=ranking_key)
    logger.debug(
        "Policy layers collected | entity=%s | category=%s | selected=%s",
        entity_id,
        category.value if category is not None else "ALL",
        len(selected),
    )
    return selected
