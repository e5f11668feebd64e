"""End-to-end HTTP flows over the seeded demo hierarchy.

The seeded hierarchy lives in America/New_York, so 21:00Z on 2025-03-04 is
16:00 local on a Tuesday.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from rate_engine.controllers.resolution_controller import router as resolution_router
from rate_engine.controllers.surge_controller import router as surge_router
from rate_engine.repository.data_repository import DataRepository
from rate_engine.services.demand_service import DemandSnapshotService
from rate_engine.services.resolution_service import ResolutionService
from rate_engine.services.scheduler_registry import SurgeSchedulerRegistry
from rate_engine.services.surge_materializer import SurgeMaterializationService
from rate_engine.utils.config import get_settings


FIXED_NOW = datetime(2025, 3, 4, 21, 30, tzinfo=timezone.utc)
HALL_SCOPE = {"level": "SUBAREA", "entity_id": "sub-main-hall"}


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _build_test_app(tmp_path, filename: str) -> tuple[FastAPI, DataRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_data_if_empty()

    surge_service = SurgeMaterializationService(
        repository=repository,
        settings=settings,
        clock=lambda: FIXED_NOW,
    )

    app = FastAPI()
    app.include_router(resolution_router)
    app.include_router(surge_router)
    app.state.repository = repository
    app.state.resolution_service = ResolutionService(repository=repository, settings=settings)
    app.state.surge_service = surge_service
    app.state.demand_service = DemandSnapshotService(repository=repository, settings=settings)
    app.state.scheduler_registry = SurgeSchedulerRegistry(materializer=surge_service, settings=settings)
    return app, repository


def _resolve(client: TestClient, start: str, end: str, **extra):
    return client.post("/resolve", json={"entity_id": "venue-hall-a", "start": start, "end": end, **extra})


def test_resolve_stored_entity_returns_audit_trail(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_resolve.db")
    client = TestClient(app)

    response = _resolve(client, "2025-03-04T21:00:00Z", "2025-03-05T00:00:00Z")
    assert response.status_code == 200
    body = response.json()
    assert body["timezone"] == "America/New_York"
    assert body["total_price"] == 230.0
    assert body["total_hours"] == 3.0
    assert [row["local_time"] for row in body["breakdown"]] == ["16:00", "17:00", "18:00"]
    assert [row["ratesheet_id"] for row in body["breakdown"]] == [
        "rs-site-daytime",
        "rs-hall-evening",
        "rs-hall-evening",
    ]
    assert body["rate_sheet_segments"] == 3
    assert body["default_rate_segments"] == 0
    summary = {row["layer_id"]: row["times_applied"] for row in body["ratesheets_summary"]}
    assert summary == {"rs-site-daytime": 1, "rs-hall-evening": 2}
    assert [row["source"] for row in body["capacity_segments"]] == [
        "DEFAULT_CAPACITY",
        "CAPACITY_SHEET",
        "CAPACITY_SHEET",
    ]
    assert len(body["decision_log"]) == 3


def test_resolve_reports_blackout_and_request_errors(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_resolve_errors.db")
    client = TestClient(app)

    holiday = _resolve(client, "2025-01-01T15:00:00Z", "2025-01-01T16:00:00Z")
    assert holiday.status_code == 200
    segment = holiday.json()["capacity_segments"][0]
    assert segment["is_available"] is False
    assert segment["reason"] == "Blackout 'New Year's Day' from Downtown Campus"

    missing = client.post(
        "/resolve",
        json={"entity_id": "missing", "start": "2025-03-04T21:00:00Z", "end": "2025-03-04T22:00:00Z"},
    )
    assert missing.status_code == 404

    backwards = _resolve(client, "2025-03-04T22:00:00Z", "2025-03-04T21:00:00Z")
    assert backwards.status_code == 400


def test_inline_resolution_validates_layers_and_reports_missing_rates(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_inline.db")
    client = TestClient(app)
    window = {"start": "2025-03-04T10:00:00Z", "end": "2025-03-04T11:00:00Z"}
    chain = [{"id": "solo", "level": "SITE"}]

    unpriced = client.post("/resolve", json={"entity_id": "solo", "ancestor_chain": chain, **window})
    assert unpriced.status_code == 422
    assert len(unpriced.json()["detail"]["decision_log"]) == 1

    broken_layer = {
        "id": "overnight",
        "scope": {"level": "SITE", "entity_id": "solo"},
        "effective_from": "2025-01-01T00:00:00Z",
        "windows": [{"start_time": "22:00", "end_time": "02:00", "value": 10.0}],
    }
    invalid = client.post(
        "/resolve",
        json={"entity_id": "solo", "ancestor_chain": chain, "candidate_layers": [broken_layer], **window},
    )
    assert invalid.status_code == 400

    priced_layer = dict(broken_layer, id="flat", windows=[{"start_time": "00:00", "end_time": "24:00", "value": 75.0}])
    priced = client.post(
        "/resolve",
        json={"entity_id": "solo", "ancestor_chain": chain, "candidate_layers": [priced_layer], **window},
    )
    assert priced.status_code == 200
    assert priced.json()["total_price"] == 75.0
    assert priced.json()["timezone"] == "UTC"

    empty_chain = client.post("/resolve", json={"entity_id": "solo", "ancestor_chain": [], **window})
    assert empty_chain.status_code == 422


def test_surge_materialize_approve_and_supersede_flow(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_surge.db")
    client = TestClient(app)

    snapshot = client.post(
        "/demand/snapshots",
        json={
            "scope": HALL_SCOPE,
            "hour_start": "2025-03-04T21:00:00Z",
            "bookings_count": 15,
            "available_capacity": 150,
        },
    )
    assert snapshot.status_code == 201
    assert snapshot.json()["demand_pressure"] == 10.0
    assert snapshot.json()["historical_avg_pressure"] == 1.0

    first = client.post("/surge/configs/surge-main-hall/materialize")
    assert first.status_code == 201
    first_body = first.json()
    assert first_body["multiplier"] == 1.8
    assert first_body["approval_status"] == "DRAFT"
    assert first_body["effective_from"] == "2025-03-04T22:00:00.000000+00:00"
    assert first_body["effective_to"] == "2025-03-04T23:00:00.000000+00:00"
    layer_id = first_body["created_layer_id"]

    # drafts never affect pricing
    draft_price = _resolve(client, "2025-03-04T22:00:00Z", "2025-03-04T23:00:00Z")
    assert draft_price.json()["total_price"] == 90.0

    approved = client.patch(f"/layers/{layer_id}/status", json={"status": "APPROVED"})
    assert approved.status_code == 200
    assert approved.json()["approval_status"] == "APPROVED"
    assert approved.json()["active"] is True

    surged = _resolve(client, "2025-03-04T22:00:00Z", "2025-03-04T23:00:00Z").json()
    assert surged["total_price"] == 162.0
    assert surged["breakdown"][0]["surge_multiplier"] == 1.8
    assert surged["breakdown"][0]["base_price_per_hour"] == 90.0

    second = client.post("/surge/configs/surge-main-hall/materialize", json={"use_latest_snapshot": True})
    assert second.status_code == 201
    assert second.json()["superseded_layer_ids"] == [layer_id]

    retired = client.patch(f"/layers/{layer_id}/status", json={"status": "APPROVED"})
    assert retired.status_code == 409
    assert client.patch("/layers/unknown/status", json={"status": "REJECTED"}).status_code == 404
    assert client.patch(f"/layers/{layer_id}/status", json={"status": "DRAFT"}).status_code == 422


def test_surge_calculation_and_config_endpoints(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_surge_configs.db")
    client = TestClient(app)
    demand = {"current_demand": 15, "current_supply": 10, "historical_avg_pressure": 1.2}

    preview = client.post("/surge/calculate", json={"demand_supply": demand})
    assert preview.status_code == 200
    assert abs(preview.json()["multiplier"] - 1.7577) < 1e-4
    bad_alpha = client.post("/surge/calculate", json={"demand_supply": demand, "surge_params": {"alpha": 5}})
    assert bad_alpha.status_code == 400

    created = client.post(
        "/surge/configs",
        json={
            "id": "surge-site",
            "name": "Site Surge",
            "scope": {"level": "SITE", "entity_id": "site-downtown"},
            "demand_supply": demand,
            "effective_from": "2025-01-01T00:00:00Z",
            "priority": 300,
        },
    )
    assert created.status_code == 201
    assert created.json()["surge_duration_hours"] == 1

    fetched = client.get("/surge/configs/surge-site")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Site Surge"
    assert client.get("/surge/configs/missing").status_code == 404

    updated = client.put("/surge/configs/surge-site/demand", json=dict(demand, current_demand=30))
    assert updated.status_code == 200
    assert updated.json()["demand_supply"]["current_demand"] == 30.0
    rejected = client.put("/surge/configs/surge-site/demand", json=dict(demand, current_supply=0))
    assert rejected.status_code == 400

    both = client.post("/surge/materialize", json={"config_id": "surge-site", "scope": HALL_SCOPE})
    assert both.status_code == 422
    by_scope = client.post("/surge/materialize", json={"scope": HALL_SCOPE})
    assert by_scope.status_code == 201
    assert [item["config_id"] for item in by_scope.json()] == ["surge-main-hall"]


def test_surge_schedule_lifecycle(tmp_path):
    app, _ = _build_test_app(tmp_path, "api_schedules.db")
    client = TestClient(app)
    registry = app.state.scheduler_registry

    try:
        assert client.post("/surge/schedules", json={"config_id": "missing"}).status_code == 404
        too_fast = client.post("/surge/schedules", json={"config_id": "surge-main-hall", "interval_seconds": 0.5})
        assert too_fast.status_code == 400

        started = client.post("/surge/schedules", json={"config_id": "surge-main-hall", "interval_seconds": 3600})
        assert started.status_code == 201
        assert started.json()["running"] is True
        duplicate = client.post("/surge/schedules", json={"config_id": "surge-main-hall"})
        assert duplicate.status_code == 409
        assert [job["config_id"] for job in client.get("/surge/schedules").json()] == ["surge-main-hall"]

        stopped = client.delete("/surge/schedules/surge-main-hall")
        assert stopped.status_code == 200
        assert stopped.json()["running"] is False
        assert client.delete("/surge/schedules/surge-main-hall").status_code == 404
    finally:
        registry.stop_all()
