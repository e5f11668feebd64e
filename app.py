"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires services and routers and runs the startup and shutdown hooks.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from rate_engine.controllers.resolution_controller import router as resolution_router
from rate_engine.controllers.surge_controller import router as surge_router
from rate_engine.repository.data_repository import DataRepository
from rate_engine.services.demand_service import DemandSnapshotService
from rate_engine.services.resolution_service import ResolutionService
from rate_engine.services.scheduler_registry import SurgeSchedulerRegistry
from rate_engine.services.surge_materializer import SurgeMaterializationService
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service is constructed here and exposed through app.state, so the
    dependency providers never build hidden singletons.
    """
    settings = settings or get_settings()

    # --- Repository (single SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services (engine logic, no direct DB access) ---
    resolution_service = ResolutionService(repository=repository, settings=settings)
    surge_service = SurgeMaterializationService(repository=repository, settings=settings)
    demand_service = DemandSnapshotService(repository=repository, settings=settings)
    scheduler_registry = SurgeSchedulerRegistry(materializer=surge_service, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests; stop jobs on exit."""
        _startup(app, settings)
        try:
            yield
        finally:
            _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(resolution_router)
    app.include_router(surge_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.resolution_service = resolution_service
    app.state.surge_service = surge_service
    app.state.demand_service = demand_service
    app.state.scheduler_registry = scheduler_registry

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before the demo hierarchy is seeded.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo hierarchy (skipped if nodes exist)")
        repository.seed_demo_data_if_empty()

    logger.info("Startup complete | app=%s | version=%s", settings.app_name, settings.app_version)


def _shutdown(app: FastAPI) -> None:
    registry: SurgeSchedulerRegistry = app.state.scheduler_registry
    logger.info("Shutdown: stopping surge schedulers")
    registry.stop_all()


# Module-level app object for uvicorn
app = create_app()
