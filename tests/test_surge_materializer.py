"""Tests for surge layer materialization, supersession and approval.

Each test runs against its own SQLite file with a fixed clock.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from rate_engine.domain.models import (
    ApprovalStatus,
    DemandSnapshot,
    DemandSupply,
    HierarchyLevel,
    LayerKind,
    PolicyLayer,
    PolicyWindow,
    Scope,
    SurgeConfig,
    SurgeParams,
)
from rate_engine.repository.data_repository import DataRepository
from rate_engine.services.surge_calculator import InvalidSurgeParametersError
from rate_engine.services.surge_materializer import (
    SUPERSEDED_REASON,
    ConcurrentMaterializationConflictError,
    LayerNotFoundError,
    LayerStatusError,
    SurgeConfigNotFoundError,
    SurgeHourAlreadyMaterializedError,
    SurgeMaterializationService,
)
from rate_engine.utils.config import get_settings


SCOPE = Scope(HierarchyLevel.SUBAREA, "hall")


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename, seed_demo_data=False, **overrides)


def _config(**overrides) -> SurgeConfig:
    defaults = {
        "id": "surge-hall",
        "name": "Hall Surge",
        "scope": SCOPE,
        "demand_supply": DemandSupply(15, 10, 1.2),
        "surge_params": SurgeParams(),
        "effective_from": _utc(2025, 1, 1),
        "effective_to": _utc(2026, 1, 1),
        "priority": 700,
    }
    defaults.update(overrides)
    return SurgeConfig(**defaults)


def _snapshot(hour: datetime, bookings: int = 15) -> DemandSnapshot:
    return DemandSnapshot(
        scope=SCOPE,
        hour_start=hour,
        bookings_count=bookings,
        total_attendees=bookings,
        available_capacity=150.0,
        demand_pressure=bookings / 1.5,
        historical_avg_pressure=1.2,
        timestamp=hour,
    )


def _build_service(tmp_path, filename: str, now: datetime, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.save_surge_config(_config())
    service = SurgeMaterializationService(repository=repository, settings=settings, clock=lambda: now)
    return service, repository


def test_materialized_layer_targets_next_hour_as_draft(tmp_path):
    service, repository = _build_service(tmp_path, "surge_next_hour.db", now=_utc(2025, 3, 4, 14, 30))

    result = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    assert result.effective_from == _utc(2025, 3, 4, 15)
    assert result.effective_to == _utc(2025, 3, 4, 16)
    assert result.approval_status is ApprovalStatus.DRAFT
    assert result.multiplier == pytest.approx(1.7577, abs=1e-4)

    layer = repository.get_layer(result.created_layer_id)
    assert layer.kind is LayerKind.SURGE_MULTIPLIER
    assert layer.priority == 10700
    assert layer.name == "SURGE: Hall Surge"
    assert not layer.active
    assert layer.windows == (PolicyWindow("00:00", "24:00", result.multiplier),)
    assert layer.target_hour_start == _utc(2025, 3, 4, 15)

    config = repository.get_surge_config("surge-hall")
    assert config.materialized_layer_id == result.created_layer_id
    assert config.last_materialized_at == _utc(2025, 3, 4, 14, 30)


def test_rematerializing_supersedes_unexpired_layer(tmp_path):
    service, repository = _build_service(tmp_path, "surge_supersede.db", now=_utc(2025, 3, 4, 14, 30))
    snapshot = _snapshot(_utc(2025, 3, 4, 14))

    first = service.materialize("surge-hall", snapshot=snapshot)
    second = service.materialize("surge-hall", snapshot=replace(snapshot, bookings_count=20))

    assert second.superseded_layer_ids == (first.created_layer_id,)
    old = repository.get_layer(first.created_layer_id)
    assert old.approval_status is ApprovalStatus.SUPERSEDED
    assert not old.active
    assert old.superseded_reason == SUPERSEDED_REASON
    assert old.superseded_at == _utc(2025, 3, 4, 14, 30)

    live = [
        layer
        for layer in repository.list_layers_for_surge_config("surge-hall")
        if layer.approval_status is not ApprovalStatus.SUPERSEDED
    ]
    assert [layer.id for layer in live] == [second.created_layer_id]


def test_expired_layers_are_left_untouched(tmp_path):
    service, repository = _build_service(tmp_path, "surge_history.db", now=_utc(2025, 3, 4, 14, 30))

    past = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 10)))
    current = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    assert current.superseded_layer_ids == ()
    assert repository.get_layer(past.created_layer_id).approval_status is ApprovalStatus.DRAFT


def test_invalid_parameters_leave_existing_layers_untouched(tmp_path):
    service, repository = _build_service(tmp_path, "surge_invalid.db", now=_utc(2025, 3, 4, 14, 30))
    existing = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))
    repository.save_surge_config(_config(surge_params=SurgeParams(alpha=5.0)))

    with pytest.raises(InvalidSurgeParametersError):
        service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    layers = repository.list_layers_for_surge_config("surge-hall")
    assert [layer.id for layer in layers] == [existing.created_layer_id]
    assert layers[0].approval_status is ApprovalStatus.DRAFT


def test_without_snapshot_layer_is_time_boxed_from_config_start(tmp_path):
    service, repository = _build_service(tmp_path, "surge_manual.db", now=_utc(2025, 3, 4, 14, 30))
    repository.save_surge_config(_config(effective_to=None, surge_duration_hours=2))

    result = service.materialize("surge-hall", use_latest_snapshot=False)

    assert result.effective_from == _utc(2025, 1, 1)
    assert result.effective_to == _utc(2025, 1, 1, 2)
    assert result.demand_supply == DemandSupply(15, 10, 1.2)
    assert repository.get_layer(result.created_layer_id).effective_to == _utc(2025, 1, 1, 2)


def test_open_ended_legacy_layer_is_not_superseded(tmp_path):
    service, repository = _build_service(tmp_path, "surge_legacy.db", now=_utc(2025, 3, 4, 14, 30))
    repository.save_layer(
        PolicyLayer(
            id="surge-legacy",
            name="SURGE: Hall Surge",
            scope=SCOPE,
            kind=LayerKind.SURGE_MULTIPLIER,
            effective_from=_utc(2025, 1, 1),
            windows=(PolicyWindow("00:00", "24:00", 1.2),),
            active=False,
            approval_status=ApprovalStatus.DRAFT,
            surge_config_id="surge-hall",
            target_hour_start=_utc(2025, 1, 1),
        )
    )

    result = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    assert result.superseded_layer_ids == ()
    assert repository.get_layer("surge-legacy").approval_status is ApprovalStatus.DRAFT


def test_latest_stored_snapshot_drives_demand(tmp_path):
    service, repository = _build_service(tmp_path, "surge_latest.db", now=_utc(2025, 3, 4, 14, 30))
    repository.save_demand_snapshot(_snapshot(_utc(2025, 3, 4, 12), bookings=5))
    repository.save_demand_snapshot(_snapshot(_utc(2025, 3, 4, 13), bookings=30))

    result = service.materialize("surge-hall")

    assert result.effective_from == _utc(2025, 3, 4, 14)
    assert result.demand_supply.current_demand == 30.0
    assert result.demand_supply.current_supply == 10.0
    assert result.multiplier == 1.8


def test_rematerializing_an_expired_hour_reports_existing_layer(tmp_path):
    service, repository = _build_service(tmp_path, "surge_conflict.db", now=_utc(2025, 3, 4, 17))
    repository.save_layer(
        PolicyLayer(
            id="surge-other-writer",
            name="SURGE: Hall Surge",
            scope=SCOPE,
            kind=LayerKind.SURGE_MULTIPLIER,
            effective_from=_utc(2025, 3, 4, 15),
            effective_to=_utc(2025, 3, 4, 16),
            windows=(PolicyWindow("00:00", "24:00", 1.2),),
            active=False,
            approval_status=ApprovalStatus.DRAFT,
            surge_config_id="surge-hall",
            target_hour_start=_utc(2025, 3, 4, 15),
        )
    )

    with pytest.raises(SurgeHourAlreadyMaterializedError) as excinfo:
        service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    assert excinfo.value.layer_id == "surge-other-writer"
    assert [layer.id for layer in repository.list_layers_for_surge_config("surge-hall")] == [
        "surge-other-writer"
    ]


# --- concurrency ---

def test_parallel_materializations_leave_one_live_layer(tmp_path):
    settings = _build_test_settings(tmp_path, "surge_parallel.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.save_surge_config(_config())
    snapshot = _snapshot(_utc(2025, 3, 4, 14))
    workers = 8
    barrier = threading.Barrier(workers)
    created: list[str] = []
    errors: list[Exception] = []

    def run() -> None:
        # separate service instances share nothing in-process but the database file
        service = SurgeMaterializationService(
            repository=DataRepository(settings),
            settings=settings,
            clock=lambda: _utc(2025, 3, 4, 14, 30),
        )
        barrier.wait()
        try:
            created.append(service.materialize("surge-hall", snapshot=snapshot).created_layer_id)
        except ConcurrentMaterializationConflictError:
            pass
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    live = [
        layer
        for layer in repository.list_layers_for_surge_config("surge-hall")
        if layer.approval_status is ApprovalStatus.DRAFT
    ]
    assert len(live) == 1
    assert live[0].id in created
    assert live[0].target_hour_start == _utc(2025, 3, 4, 15)


def test_hour_locks_are_released_after_use(tmp_path):
    service, _ = _build_service(tmp_path, "surge_locks.db", now=_utc(2025, 3, 4, 23, 30))

    for hour in range(20):
        service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, hour)))

    assert service._locks == {}


def test_ema_smoothing_persists_smoothed_pressure(tmp_path):
    service, repository = _build_service(
        tmp_path,
        "surge_ema.db",
        now=_utc(2025, 3, 4, 14, 30),
        surge_ema_smoothing_enabled=True,
    )
    repository.save_surge_config(_config(last_smoothed_pressure=10.0))

    result = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    assert result.calculation.smoothed_pressure == pytest.approx(0.3 * 12.5 + 0.7 * 10.0)
    assert repository.get_surge_config("surge-hall").last_smoothed_pressure == pytest.approx(10.75)


def test_unknown_config_and_scope_raise(tmp_path):
    service, _ = _build_service(tmp_path, "surge_unknown.db", now=_utc(2025, 3, 4, 14, 30))

    with pytest.raises(SurgeConfigNotFoundError):
        service.materialize("missing")
    with pytest.raises(SurgeConfigNotFoundError):
        service.materialize_scope(Scope(HierarchyLevel.SITE, "nowhere"))


def test_materialize_scope_covers_every_active_config(tmp_path):
    service, repository = _build_service(tmp_path, "surge_scope.db", now=_utc(2025, 3, 4, 14, 30))
    repository.save_surge_config(_config(id="surge-hall-2", name="Second", priority=100))
    repository.save_surge_config(_config(id="surge-hall-off", name="Off", active=False))

    results = service.materialize_scope(SCOPE)

    assert sorted(result.config_id for result in results) == ["surge-hall", "surge-hall-2"]


# --- approval workflow ---

def test_approve_activates_and_reject_retires(tmp_path):
    service, repository = _build_service(tmp_path, "surge_approval.db", now=_utc(2025, 3, 4, 14, 30))
    first = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))

    approved = service.approve_layer(first.created_layer_id)
    assert approved.approval_status is ApprovalStatus.APPROVED
    assert approved.active

    second = service.materialize("surge-hall", snapshot=_snapshot(_utc(2025, 3, 4, 14)))
    assert second.superseded_layer_ids == (first.created_layer_id,)
    with pytest.raises(LayerStatusError):
        service.approve_layer(first.created_layer_id)

    rejected = service.reject_layer(second.created_layer_id)
    assert rejected.approval_status is ApprovalStatus.REJECTED
    assert not rejected.active

    with pytest.raises(LayerNotFoundError):
        service.approve_layer("missing-layer")


# --- config management ---

def test_save_config_validates_parameters(tmp_path):
    service, repository = _build_service(tmp_path, "surge_save.db", now=_utc(2025, 3, 4, 14, 30))

    with pytest.raises(InvalidSurgeParametersError):
        service.save_config(_config(id="bad", surge_params=SurgeParams(min_multiplier=2.0, max_multiplier=1.0)))
    assert repository.get_surge_config("bad") is None

    service.save_config(_config(id="good", surge_duration_hours=2))
    assert repository.get_surge_config("good").surge_duration_hours == 2


def test_update_demand_replaces_stored_inputs(tmp_path):
    service, repository = _build_service(tmp_path, "surge_demand.db", now=_utc(2025, 3, 4, 14, 30))

    updated = service.update_demand("surge-hall", DemandSupply(30, 10, 1.2))

    assert updated.demand_supply == DemandSupply(30, 10, 1.2)
    assert repository.get_surge_config("surge-hall").demand_supply == DemandSupply(30, 10, 1.2)
    with pytest.raises(InvalidSurgeParametersError):
        service.update_demand("surge-hall", DemandSupply(30, 0, 1.2))
