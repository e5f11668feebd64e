"""HTTP controller layer for price and capacity resolution."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from rate_engine.controllers.dependencies import get_resolution_service
from rate_engine.domain.constraints import (
    PolicyValidationError,
    validate_operating_hours,
    validate_policy_layer,
)
from rate_engine.domain.models import (
    ApprovalStatus,
    BlackoutType,
    DayOfWeek,
    HierarchyLevel,
    LayerCategory,
    LayerKind,
    RecurrencePattern,
    TieBreak,
)
from rate_engine.repository import codec
from rate_engine.services.policy_collector import UnknownEntityError
from rate_engine.services.pricing_service import NoApplicablePolicyError
from rate_engine.services.resolution_service import ResolutionQuery, ResolutionService
from rate_engine.services.segmentation import InvalidRangeError
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import InvalidTimeError


logger = get_logger(__name__)

router = APIRouter(tags=["resolution"])

LOCAL_TIME_REGEX = r"^(([01]\d|2[0-3]):[0-5]\d|24:00)$"


class ScopePayload(BaseModel):
    level: HierarchyLevel
    entity_id: str = Field(min_length=1)


class CapacityBoundsPayload(BaseModel):
    min_capacity: int = Field(ge=0)
    max_capacity: int = Field(ge=0)
    default_capacity: int = Field(ge=0)
    allocated_capacity: int = Field(default=0, ge=0)


class WindowPayload(BaseModel):
    start_time: str = Field(pattern=LOCAL_TIME_REGEX)
    end_time: str = Field(pattern=LOCAL_TIME_REGEX)
    value: float = 0.0
    capacity: Optional[CapacityBoundsPayload] = None


class RecurrencePayload(BaseModel):
    pattern: RecurrencePattern = RecurrencePattern.NONE
    days_of_week: list[DayOfWeek] = Field(default_factory=list)
    day_of_month: Optional[int] = None


class PackagePayload(BaseModel):
    duration_hours: float = Field(gt=0.0)
    total_price: float = Field(ge=0.0)
    description: str = ""


class PolicyLayerPayload(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    scope: ScopePayload
    kind: LayerKind = LayerKind.TIME_WINDOW
    category: LayerCategory = LayerCategory.RATE
    priority: int = 0
    tie_break: TieBreak = TieBreak.PRIORITY
    effective_from: datetime
    effective_to: Optional[datetime] = None
    recurrence: RecurrencePayload = Field(default_factory=RecurrencePayload)
    windows: list[WindowPayload] = Field(default_factory=list)
    packages: list[PackagePayload] = Field(default_factory=list)
    active: bool = True
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    description: str = ""


class TimeSlotPayload(BaseModel):
    start_time: str = Field(pattern=LOCAL_TIME_REGEX)
    end_time: str = Field(pattern=LOCAL_TIME_REGEX)


class BlackoutPayload(BaseModel):
    id: str = Field(min_length=1)
    date: date
    type: BlackoutType = BlackoutType.FULL_DAY
    start_time: Optional[str] = Field(default=None, pattern=LOCAL_TIME_REGEX)
    end_time: Optional[str] = Field(default=None, pattern=LOCAL_TIME_REGEX)
    recurring_yearly: bool = False
    recurring_until: Optional[date] = None
    cancelled: bool = False
    reason: str = ""


class OperatingHoursPayload(BaseModel):
    weekly_schedule: dict[DayOfWeek, list[TimeSlotPayload]] = Field(default_factory=dict)
    blackouts: list[BlackoutPayload] = Field(default_factory=list)


class HourlyOverridePayload(BaseModel):
    local_date: date
    hour: int = Field(ge=0, le=23)
    bounds: CapacityBoundsPayload


class CapacityAllocationPayload(BaseModel):
    transient: float = Field(default=0.0, ge=0.0)
    events: float = Field(default=0.0, ge=0.0)
    reserved: float = Field(default=0.0, ge=0.0)
    unavailable: float = Field(default=0.0, ge=0.0)
    ready_to_use: float = Field(default=0.0, ge=0.0)


class HierarchyNodePayload(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    level: HierarchyLevel
    parent_id: Optional[str] = None
    timezone: Optional[str] = None
    default_hourly_rate: Optional[float] = Field(default=None, ge=0.0)
    default_capacity: Optional[CapacityBoundsPayload] = None
    operating_hours: Optional[OperatingHoursPayload] = None
    capacity_allocation: Optional[CapacityAllocationPayload] = None
    hourly_capacity_overrides: list[HourlyOverridePayload] = Field(default_factory=list)


class ResolveRequest(BaseModel):
    """Either a stored entity id, or an inline ancestor chain plus candidate layers."""

    entity_id: str = Field(min_length=1)
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    ancestor_chain: Optional[list[HierarchyNodePayload]] = None
    candidate_layers: list[PolicyLayerPayload] = Field(default_factory=list)

    @field_validator("ancestor_chain")
    @classmethod
    def validate_chain_not_empty(
        cls,
        value: Optional[list[HierarchyNodePayload]],
    ) -> Optional[list[HierarchyNodePayload]]:
        if value is not None and not value:
            raise ValueError("ancestor_chain must contain at least one node when provided")
        return value


class ResolveResponse(BaseModel):
    entity_id: str
    timezone: str
    start: str
    end: str
    total_price: float = Field(ge=0.0)
    currency: str
    total_hours: float = Field(gt=0.0)
    breakdown: list[dict[str, Any]]
    decision_log: list[dict[str, Any]]
    ratesheets_summary: list[dict[str, Any]]
    rate_sheet_segments: int = Field(ge=0)
    default_rate_segments: int = Field(ge=0)
    capacity_breakdown: dict[str, Any]
    capacity_segments: list[dict[str, Any]]
    capacity_summary: dict[str, float]
    capacity_decision_log: list[dict[str, Any]]


def _build_query(payload: ResolveRequest) -> ResolutionQuery:
    chain = [codec.node_from_dict(node.model_dump(mode="json")) for node in payload.ancestor_chain or ()]
    layers = [codec.layer_from_dict(layer.model_dump(mode="json")) for layer in payload.candidate_layers]
    for node in chain:
        if node.operating_hours is not None:
            validate_operating_hours(node.operating_hours)
    for layer in layers:
        validate_policy_layer(layer)
    return ResolutionQuery(
        entity_id=payload.entity_id,
        ancestor_chain=chain,
        candidate_layers=layers,
        start=payload.start,
        end=payload.end,
        timezone=payload.timezone,
    )


@router.post(
    "/resolve",
    response_model=ResolveResponse,
    status_code=status.HTTP_200_OK,
)
async def resolve_booking(
    payload: ResolveRequest,
    service: ResolutionService = Depends(get_resolution_service),
) -> ResolveResponse:
    """Resolve hourly price and capacity for a booking interval with the full audit trail."""
    try:
        if payload.ancestor_chain is None:
            result = service.resolve_for_entity(
                entity_id=payload.entity_id,
                start=payload.start,
                end=payload.end,
                timezone=payload.timezone,
            )
        else:
            result = service.resolve(_build_query(payload))
        return ResolveResponse(**result.to_dict())
    except (InvalidRangeError, InvalidTimeError, PolicyValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except UnknownEntityError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except NoApplicablePolicyError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "decision_log": exc.decision_log},
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected resolution failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to resolve booking",
        ) from exc
