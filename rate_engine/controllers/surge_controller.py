"""HTTP controller layer for surge calculation, materialization and scheduling."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator

from rate_engine.controllers.dependencies import (
    get_demand_service,
    get_scheduler_registry,
    get_surge_service,
)
from rate_engine.controllers.resolution_controller import ScopePayload, WindowPayload
from rate_engine.domain.models import (
    ApprovalStatus,
    DemandSupply,
    PolicyWindow,
    Scope,
    SurgeConfig,
    SurgeParams,
)
from rate_engine.repository import codec
from rate_engine.services.demand_service import DemandSnapshotService, DemandValidationError
from rate_engine.services.scheduler_registry import (
    InvalidIntervalError,
    JobAlreadyRunningError,
    JobNotFoundError,
    SurgeSchedulerRegistry,
)
from rate_engine.services.surge_calculator import (
    InvalidSurgeParametersError,
    calculate_surge_multiplier,
)
from rate_engine.services.surge_materializer import (
    ConcurrentMaterializationConflictError,
    LayerNotFoundError,
    LayerStatusError,
    MaterializationResult,
    SurgeConfigNotFoundError,
    SurgeHourAlreadyMaterializedError,
    SurgeMaterializationService,
)
from rate_engine.utils.config import get_settings
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["surge"])


class DemandSupplyPayload(BaseModel):
    current_demand: float
    current_supply: float
    historical_avg_pressure: float


class SurgeParamsPayload(BaseModel):
    alpha: float = 0.3
    min_multiplier: float = 0.75
    max_multiplier: float = 1.8
    ema_alpha: float = 0.3


class SurgeCalculateRequest(BaseModel):
    """Range checks happen in the calculator so violations map to a 400."""

    demand_supply: DemandSupplyPayload
    surge_params: SurgeParamsPayload = Field(default_factory=SurgeParamsPayload)
    previous_smoothed_pressure: Optional[float] = Field(default=None, ge=0.0)


class SurgeCalculateResponse(BaseModel):
    pressure: float
    normalized_pressure: float
    smoothed_pressure: float
    raw_factor: Optional[float]
    multiplier: float
    clamped: bool


class SurgeConfigRequest(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    scope: ScopePayload
    demand_supply: DemandSupplyPayload
    surge_params: SurgeParamsPayload = Field(default_factory=SurgeParamsPayload)
    effective_from: datetime
    effective_to: Optional[datetime] = None
    priority: int = 0
    windows: list[WindowPayload] = Field(default_factory=list)
    surge_duration_hours: Optional[int] = Field(default=None, gt=0)
    active: bool = True


class MaterializeRequest(BaseModel):
    use_latest_snapshot: bool = True


class MaterializeScopeRequest(BaseModel):
    config_id: Optional[str] = None
    scope: Optional[ScopePayload] = None

    @model_validator(mode="after")
    def validate_single_target(self) -> "MaterializeScopeRequest":
        if (self.config_id is None) == (self.scope is None):
            raise ValueError("provide exactly one of config_id or scope")
        return self


class MaterializeResponse(BaseModel):
    config_id: str
    created_layer_id: str
    multiplier: float = Field(gt=0.0)
    approval_status: str
    superseded_layer_ids: list[str]
    effective_from: str
    effective_to: Optional[str]
    demand_supply: dict[str, float]
    calculation: dict[str, Any]


class DemandSnapshotRequest(BaseModel):
    scope: ScopePayload
    hour_start: datetime
    bookings_count: int = Field(ge=0)
    available_capacity: float = Field(gt=0.0)
    total_attendees: int = Field(default=0, ge=0)


class LayerStatusRequest(BaseModel):
    status: ApprovalStatus

    @field_validator("status")
    @classmethod
    def validate_target_status(cls, value: ApprovalStatus) -> ApprovalStatus:
        if value not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            raise ValueError("status must be APPROVED or REJECTED")
        return value


class ScheduleStartRequest(BaseModel):
    config_id: str = Field(min_length=1)
    interval_seconds: Optional[float] = Field(default=None, gt=0.0)


class ScheduleInfoResponse(BaseModel):
    config_id: str
    interval_seconds: float
    started_at: str
    runs: int = Field(ge=0)
    failures: int = Field(ge=0)
    last_run_at: Optional[str]
    last_error: Optional[str]
    running: bool


def _materialize_response(result: MaterializationResult) -> MaterializeResponse:
    return MaterializeResponse(**result.to_dict())


def _surge_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (SurgeConfigNotFoundError, LayerNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(
        exc,
        (ConcurrentMaterializationConflictError, SurgeHourAlreadyMaterializedError, LayerStatusError),
    ):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post(
    "/surge/calculate",
    response_model=SurgeCalculateResponse,
    status_code=status.HTTP_200_OK,
)
async def calculate_surge(payload: SurgeCalculateRequest) -> SurgeCalculateResponse:
    """Preview a multiplier without touching any stored layer."""
    try:
        calculation = calculate_surge_multiplier(
            DemandSupply(**payload.demand_supply.model_dump()),
            SurgeParams(**payload.surge_params.model_dump()),
            previous_smoothed=payload.previous_smoothed_pressure,
            supply_divisor=settings.surge_supply_normalization_divisor,
        )
    except InvalidSurgeParametersError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return SurgeCalculateResponse(**calculation.to_dict())


@router.post(
    "/surge/configs",
    status_code=status.HTTP_201_CREATED,
)
async def save_surge_config(
    payload: SurgeConfigRequest,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> dict[str, Any]:
    config = SurgeConfig(
        id=payload.id,
        name=payload.name,
        scope=Scope(level=payload.scope.level, entity_id=payload.scope.entity_id),
        demand_supply=DemandSupply(**payload.demand_supply.model_dump()),
        surge_params=SurgeParams(**payload.surge_params.model_dump()),
        effective_from=payload.effective_from,
        effective_to=payload.effective_to,
        priority=payload.priority,
        windows=tuple(
            PolicyWindow(start_time=window.start_time, end_time=window.end_time, value=window.value)
            for window in payload.windows
        ),
        surge_duration_hours=payload.surge_duration_hours or settings.surge_default_duration_hours,
        active=payload.active,
    )
    try:
        saved = service.save_config(config)
    except InvalidSurgeParametersError as exc:
        raise _surge_http_error(exc) from exc
    return codec.surge_config_to_dict(saved)


@router.get("/surge/configs/{config_id}")
async def get_surge_config(
    config_id: str,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> dict[str, Any]:
    try:
        config = service.get_config(config_id)
    except SurgeConfigNotFoundError as exc:
        raise _surge_http_error(exc) from exc
    return codec.surge_config_to_dict(config)


@router.put("/surge/configs/{config_id}/demand")
async def update_surge_demand(
    config_id: str,
    payload: DemandSupplyPayload,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> dict[str, Any]:
    try:
        config = service.update_demand(config_id, DemandSupply(**payload.model_dump()))
    except (SurgeConfigNotFoundError, InvalidSurgeParametersError) as exc:
        raise _surge_http_error(exc) from exc
    return codec.surge_config_to_dict(config)


@router.post(
    "/surge/configs/{config_id}/materialize",
    response_model=MaterializeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def materialize_config(
    config_id: str,
    payload: Optional[MaterializeRequest] = None,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> MaterializeResponse:
    request = payload or MaterializeRequest()
    try:
        result = service.materialize(config_id, use_latest_snapshot=request.use_latest_snapshot)
    except (
        SurgeConfigNotFoundError,
        InvalidSurgeParametersError,
        ConcurrentMaterializationConflictError,
        SurgeHourAlreadyMaterializedError,
    ) as exc:
        raise _surge_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected materialization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to materialize surge layer",
        ) from exc
    return _materialize_response(result)


@router.post(
    "/surge/materialize",
    response_model=list[MaterializeResponse],
    status_code=status.HTTP_201_CREATED,
)
async def materialize_target(
    payload: MaterializeScopeRequest,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> list[MaterializeResponse]:
    """Materialize one config by id, or every active config attached to a scope."""
    try:
        if payload.config_id is not None:
            results = [service.materialize(payload.config_id)]
        else:
            results = service.materialize_scope(
                Scope(level=payload.scope.level, entity_id=payload.scope.entity_id)
            )
    except (
        SurgeConfigNotFoundError,
        InvalidSurgeParametersError,
        ConcurrentMaterializationConflictError,
        SurgeHourAlreadyMaterializedError,
    ) as exc:
        raise _surge_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected materialization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to materialize surge layer",
        ) from exc
    return [_materialize_response(result) for result in results]


@router.post(
    "/demand/snapshots",
    status_code=status.HTTP_201_CREATED,
)
async def record_demand_snapshot(
    payload: DemandSnapshotRequest,
    service: DemandSnapshotService = Depends(get_demand_service),
) -> dict[str, Any]:
    try:
        snapshot = service.build_snapshot(
            scope=Scope(level=payload.scope.level, entity_id=payload.scope.entity_id),
            hour_start=payload.hour_start,
            bookings_count=payload.bookings_count,
            available_capacity=payload.available_capacity,
            total_attendees=payload.total_attendees,
        )
    except DemandValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return codec.snapshot_to_dict(snapshot)


@router.patch(
    "/layers/{layer_id}/status",
    status_code=status.HTTP_200_OK,
)
async def update_layer_status(
    layer_id: str,
    payload: LayerStatusRequest,
    service: SurgeMaterializationService = Depends(get_surge_service),
) -> dict[str, Any]:
    """Approve (and activate) or reject a DRAFT layer."""
    try:
        if payload.status is ApprovalStatus.APPROVED:
            layer = service.approve_layer(layer_id)
        else:
            layer = service.reject_layer(layer_id)
    except (LayerNotFoundError, LayerStatusError) as exc:
        raise _surge_http_error(exc) from exc
    return codec.layer_to_dict(layer)


@router.get(
    "/surge/schedules",
    response_model=list[ScheduleInfoResponse],
)
async def list_schedules(
    registry: SurgeSchedulerRegistry = Depends(get_scheduler_registry),
) -> list[ScheduleInfoResponse]:
    return [ScheduleInfoResponse(**job.to_dict()) for job in registry.list_jobs()]


@router.post(
    "/surge/schedules",
    response_model=ScheduleInfoResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_schedule(
    payload: ScheduleStartRequest,
    registry: SurgeSchedulerRegistry = Depends(get_scheduler_registry),
) -> ScheduleInfoResponse:
    try:
        info = registry.start(payload.config_id, payload.interval_seconds)
    except SurgeConfigNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidIntervalError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ScheduleInfoResponse(**info.to_dict())


@router.delete(
    "/surge/schedules/{config_id}",
    response_model=ScheduleInfoResponse,
)
async def stop_schedule(
    config_id: str,
    registry: SurgeSchedulerRegistry = Depends(get_scheduler_registry),
) -> ScheduleInfoResponse:
    try:
        info = registry.stop(config_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ScheduleInfoResponse(**info.to_dict())
