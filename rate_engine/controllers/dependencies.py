"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from rate_engine.services.demand_service import DemandSnapshotService
from rate_engine.services.resolution_service import ResolutionService
from rate_engine.services.scheduler_registry import SurgeSchedulerRegistry
from rate_engine.services.surge_materializer import SurgeMaterializationService


def _require_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_resolution_service(request: Request) -> ResolutionService:
    return _require_state(request, "resolution_service", "Resolution service")


def get_surge_service(request: Request) -> SurgeMaterializationService:
    return _require_state(request, "surge_service", "Surge materialization service")


def get_demand_service(request: Request) -> DemandSnapshotService:
    return _require_state(request, "demand_service", "Demand snapshot service")


def get_scheduler_registry(request: Request) -> SurgeSchedulerRegistry:
    registry = getattr(request.app.state, "scheduler_registry", None)
    if registry is None:
        surge_service = getattr(request.app.state, "surge_service", None)
        if surge_service is not None:
            registry = SurgeSchedulerRegistry(materializer=surge_service)
            request.app.state.scheduler_registry = registry
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler registry is not initialized",
        )
    return registry
