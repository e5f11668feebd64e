from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from rate_engine.domain.models import (
    ApprovalStatus,
    CapacityBounds,
    DayOfWeek,
    DemandSnapshot,
    HierarchyLevel,
    HierarchyNode,
    HourlyCapacityOverride,
    LayerCategory,
    Scope,
)
from rate_engine.repository.data_repository import DataRepository
from rate_engine.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _seeded_repository(tmp_path, filename: str) -> DataRepository:
    repository = DataRepository(_build_test_settings(tmp_path, filename))
    repository.initialize_database()
    repository.seed_demo_data_if_empty()
    return repository


def test_ancestor_chain_is_root_to_leaf(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_chain.db")

    chain = repository.get_ancestor_chain("venue-hall-a")

    assert [node.id for node in chain] == ["acct-demo", "site-downtown", "sub-main-hall", "venue-hall-a"]
    assert repository.get_ancestor_chain("missing") == []


def test_demo_seed_is_idempotent(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_seed.db")
    nodes, layers = repository.count_nodes(), repository.count_layers()

    repository.seed_demo_data_if_empty()

    assert (repository.count_nodes(), repository.count_layers()) == (nodes, layers)
    assert repository.get_surge_config("surge-main-hall") is not None


def test_node_round_trip_keeps_nested_records(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_node.db")
    hall = repository.get_node("sub-main-hall")
    updated = replace(
        hall,
        hourly_capacity_overrides=(
            HourlyCapacityOverride(date(2025, 3, 4), 18, CapacityBounds(0, 40, 20, 10)),
        ),
    )

    repository.save_node(updated)

    assert repository.get_node("sub-main-hall") == updated
    site = repository.get_node("site-downtown")
    assert site.operating_hours.weekly_schedule[DayOfWeek.SUNDAY] == ()
    assert site.operating_hours.blackouts[0].recurring_yearly


def test_layers_listed_by_scope_and_category(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_layers.db")
    scopes = [node.scope for node in repository.get_ancestor_chain("venue-hall-a")]

    every = repository.list_layers_for_scopes(scopes)
    capacity = repository.list_layers_for_scopes(scopes, LayerCategory.CAPACITY)

    assert {layer.id for layer in every} == {"rs-site-daytime", "rs-hall-evening", "cs-hall-evening"}
    assert [layer.id for layer in capacity] == ["cs-hall-evening"]
    assert repository.list_layers_for_scopes([]) == []
    assert repository.list_layers_for_scopes([Scope(HierarchyLevel.SITE, "elsewhere")]) == []


def test_update_layer_status_returns_none_for_unknown(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_status.db")

    assert repository.update_layer_status("missing", ApprovalStatus.APPROVED, True) is None
    updated = repository.update_layer_status("rs-site-daytime", ApprovalStatus.PENDING, False)
    assert updated.approval_status is ApprovalStatus.PENDING
    assert not updated.active


def test_root_node_chain_has_single_entry(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_orphan.db")
    repository.save_node(
        HierarchyNode(id="orphan", name="Orphan", level=HierarchyLevel.VENUE_EVENT, parent_id=None)
    )

    assert [node.id for node in repository.get_ancestor_chain("orphan")] == ["orphan"]


def test_demand_history_window_is_half_open(tmp_path):
    repository = _seeded_repository(tmp_path, "repo_history.db")
    scope = Scope(HierarchyLevel.SUBAREA, "sub-main-hall")
    for hour in (10, 11, 12):
        moment = datetime(2025, 3, 4, hour, tzinfo=timezone.utc)
        repository.save_demand_snapshot(
            DemandSnapshot(
                scope=scope,
                hour_start=moment,
                bookings_count=hour,
                total_attendees=0,
                available_capacity=100.0,
                demand_pressure=float(hour),
                historical_avg_pressure=1.0,
                timestamp=moment,
            )
        )

    history = repository.list_demand_history(
        scope,
        datetime(2025, 3, 4, 10, tzinfo=timezone.utc),
        datetime(2025, 3, 4, 12, tzinfo=timezone.utc),
    )

    assert [item.bookings_count for item in history] == [10, 11]
    assert repository.get_latest_demand_snapshot(scope).bookings_count == 12


@pytest.mark.parametrize("entity_id", ["acct-demo", "venue-hall-a"])
def test_seeded_timezone_is_inherited_from_account(tmp_path, entity_id):
    repository = _seeded_repository(tmp_path, f"repo_tz_{entity_id}.db")

    chain = repository.get_ancestor_chain(entity_id)

    assert chain[0].timezone == "America/New_York"
