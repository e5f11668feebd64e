"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from rate_engine.domain.models import (
    LIVE_SURGE_STATUSES,
    RETIRED_STATUSES,
    ApprovalStatus,
    Blackout,
    CapacityBounds,
    DayOfWeek,
    DemandSnapshot,
    DemandSupply,
    HierarchyLevel,
    HierarchyNode,
    LayerCategory,
    LayerKind,
    OperatingHours,
    PolicyLayer,
    PolicyWindow,
    Recurrence,
    RecurrencePattern,
    Scope,
    SurgeConfig,
    SurgeParams,
    TieBreak,
    TimeSlot,
)
from rate_engine.repository import codec
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger


logger = get_logger(__name__)


class LayerConflictError(RuntimeError):
    """Raised when a live surge layer already exists for the same config and hour."""


class SurgeTargetTakenError(RuntimeError):
    """Raised when the target hour already holds a live layer that is past its validity."""

    def __init__(self, message: str, layer_id: str) -> None:
        super().__init__(message)
        self.layer_id = layer_id


class DataRepository:
    """Encapsulates SQLite access so the resolution engine stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=10.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS HierarchyNodes (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        level TEXT NOT NULL,
                        parent_id TEXT,
                        timezone TEXT,
                        default_hourly_rate REAL,
                        default_capacity_json TEXT,
                        operating_hours_json TEXT,
                        capacity_allocation_json TEXT,
                        hourly_overrides_json TEXT,
                        FOREIGN KEY (parent_id) REFERENCES HierarchyNodes(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PolicyLayers (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        scope_level TEXT NOT NULL,
                        scope_entity_id TEXT NOT NULL,
                        kind TEXT NOT NULL,
                        category TEXT NOT NULL DEFAULT 'RATE',
                        priority INTEGER NOT NULL DEFAULT 0,
                        tie_break TEXT NOT NULL DEFAULT 'PRIORITY',
                        effective_from TEXT NOT NULL,
                        effective_to TEXT,
                        recurrence_json TEXT,
                        windows_json TEXT,
                        packages_json TEXT,
                        active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0,1)),
                        approval_status TEXT NOT NULL DEFAULT 'APPROVED',
                        description TEXT,
                        surge_config_id TEXT,
                        target_hour_start TEXT,
                        superseded_at TEXT,
                        superseded_reason TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS SurgeConfigs (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        scope_level TEXT NOT NULL,
                        scope_entity_id TEXT NOT NULL,
                        priority INTEGER NOT NULL DEFAULT 0,
                        demand_supply_json TEXT NOT NULL,
                        surge_params_json TEXT NOT NULL,
                        effective_from TEXT NOT NULL,
                        effective_to TEXT,
                        windows_json TEXT,
                        surge_duration_hours INTEGER NOT NULL DEFAULT 1 CHECK (surge_duration_hours > 0),
                        active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0,1)),
                        materialized_layer_id TEXT,
                        last_materialized_at TEXT,
                        last_smoothed_pressure REAL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS DemandSnapshots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        scope_level TEXT NOT NULL,
                        scope_entity_id TEXT NOT NULL,
                        hour_start TEXT NOT NULL,
                        bookings_count INTEGER NOT NULL CHECK (bookings_count >= 0),
                        total_attendees INTEGER NOT NULL DEFAULT 0,
                        available_capacity REAL NOT NULL,
                        demand_pressure REAL NOT NULL,
                        historical_avg_pressure REAL NOT NULL,
                        timestamp TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_layers_scope_category
                    ON PolicyLayers(scope_level, scope_entity_id, category);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_layers_surge_config
                    ON PolicyLayers(surge_config_id, approval_status);
                    """
                )
                # At most one live surge layer per config and target hour.
                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_layers_surge_target
                    ON PolicyLayers(surge_config_id, target_hour_start)
                    WHERE surge_config_id IS NOT NULL
                      AND target_hour_start IS NOT NULL
                      AND approval_status NOT IN ('SUPERSEDED', 'REJECTED');
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_snapshots_scope_hour
                    ON DemandSnapshots(scope_level, scope_entity_id, hour_start);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------ nodes

    def save_node(self, node: HierarchyNode) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO HierarchyNodes (
                    id, name, level, parent_id, timezone, default_hourly_rate,
                    default_capacity_json, operating_hours_json,
                    capacity_allocation_json, hourly_overrides_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    level = excluded.level,
                    parent_id = excluded.parent_id,
                    timezone = excluded.timezone,
                    default_hourly_rate = excluded.default_hourly_rate,
                    default_capacity_json = excluded.default_capacity_json,
                    operating_hours_json = excluded.operating_hours_json,
                    capacity_allocation_json = excluded.capacity_allocation_json,
                    hourly_overrides_json = excluded.hourly_overrides_json;
                """,
                (
                    node.id,
                    node.name,
                    node.level.value,
                    node.parent_id,
                    node.timezone,
                    node.default_hourly_rate,
                    codec.dumps(codec.capacity_to_dict(node.default_capacity)),
                    codec.dumps(codec.operating_hours_to_dict(node.operating_hours)),
                    codec.dumps(codec.allocation_to_dict(node.capacity_allocation)),
                    codec.dumps([codec.override_to_dict(o) for o in node.hourly_capacity_overrides]),
                ),
            )
            conn.commit()

    def get_node(self, node_id: str) -> Optional[HierarchyNode]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM HierarchyNodes WHERE id = ?;", (node_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_node(row)

    def get_ancestor_chain(self, node_id: str) -> List[HierarchyNode]:
        """Return the root-to-leaf chain ending at `node_id`, or [] when unknown."""
        chain: list[HierarchyNode] = []
        seen: set[str] = set()
        current_id: Optional[str] = node_id
        while current_id is not None:
            if current_id in seen:
                raise RuntimeError(f"Hierarchy cycle detected at node {current_id}")
            seen.add(current_id)
            node = self.get_node(current_id)
            if node is None:
                if not chain:
                    return []
                raise RuntimeError(f"Hierarchy node {current_id} referenced as parent is missing")
            chain.append(node)
            current_id = node.parent_id
        chain.reverse()
        return chain

    def count_nodes(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM HierarchyNodes;")
            return int(cursor.fetchone()["count"])

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> HierarchyNode:
        rate = row["default_hourly_rate"]
        return HierarchyNode(
            id=str(row["id"]),
            name=str(row["name"]),
            level=HierarchyLevel(row["level"]),
            parent_id=row["parent_id"],
            timezone=row["timezone"],
            default_hourly_rate=float(rate) if rate is not None else None,
            default_capacity=codec.capacity_from_dict(codec.loads(row["default_capacity_json"])),
            operating_hours=codec.operating_hours_from_dict(codec.loads(row["operating_hours_json"])),
            capacity_allocation=codec.allocation_from_dict(codec.loads(row["capacity_allocation_json"])),
            hourly_capacity_overrides=tuple(
                codec.override_from_dict(item)
                for item in codec.loads(row["hourly_overrides_json"]) or ()
            ),
        )

    # ----------------------------------------------------------------- layers

    @staticmethod
    def _layer_params(layer: PolicyLayer) -> tuple:
        return (
            layer.id,
            layer.name,
            layer.scope.level.value,
            layer.scope.entity_id,
            layer.kind.value,
            layer.category.value,
            layer.priority,
            layer.tie_break.value,
            codec.dt_to_text(layer.effective_from),
            codec.dt_to_text(layer.effective_to),
            codec.dumps(codec.recurrence_to_dict(layer.recurrence)),
            codec.dumps([codec.window_to_dict(w) for w in layer.windows]),
            codec.dumps([codec.package_to_dict(p) for p in layer.packages]),
            1 if layer.active else 0,
            layer.approval_status.value,
            layer.description,
            layer.surge_config_id,
            codec.dt_to_text(layer.target_hour_start),
            codec.dt_to_text(layer.superseded_at),
            layer.superseded_reason,
        )

    _LAYER_INSERT = """
        INSERT INTO PolicyLayers (
            id, name, scope_level, scope_entity_id, kind, category, priority,
            tie_break, effective_from, effective_to, recurrence_json,
            windows_json, packages_json, active, approval_status, description,
            surge_config_id, target_hour_start, superseded_at, superseded_reason
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
    """

    def save_layer(self, layer: PolicyLayer) -> None:
        """Insert an operator-defined layer, replacing any layer with the same id."""
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM PolicyLayers WHERE id = ?;", (layer.id,))
                conn.execute(self._LAYER_INSERT, self._layer_params(layer))
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise LayerConflictError(f"Layer {layer.id} conflicts with an existing layer: {exc}") from exc

    def get_layer(self, layer_id: str) -> Optional[PolicyLayer]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM PolicyLayers WHERE id = ?;", (layer_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_layer(row)

    def list_layers_for_scopes(
        self,
        scopes: Iterable[Scope],
        category: Optional[LayerCategory] = None,
    ) -> List[PolicyLayer]:
        """Return every stored layer attached to any of `scopes`; callers filter further."""
        scope_list = list(scopes)
        if not scope_list:
            return []
        clauses = " OR ".join("(scope_level = ? AND scope_entity_id = ?)" for _ in scope_list)
        params: list[str] = []
        for scope in scope_list:
            params.extend((scope.level.value, scope.entity_id))
        query = f"SELECT * FROM PolicyLayers WHERE ({clauses})"
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        query += " ORDER BY id ASC;"
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [self._row_to_layer(row) for row in cursor.fetchall()]

    def list_layers_for_surge_config(self, config_id: str) -> List[PolicyLayer]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM PolicyLayers
                WHERE surge_config_id = ?
                ORDER BY effective_from ASC, id ASC;
                """,
                (config_id,),
            )
            return [self._row_to_layer(row) for row in cursor.fetchall()]

    def update_layer_status(
        self,
        layer_id: str,
        status: ApprovalStatus,
        active: bool,
    ) -> Optional[PolicyLayer]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE PolicyLayers SET approval_status = ?, active = ? WHERE id = ?;",
                (status.value, 1 if active else 0, layer_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_layer(layer_id)

    def count_layers(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM PolicyLayers;")
            return int(cursor.fetchone()["count"])

    @staticmethod
    def _row_to_layer(row: sqlite3.Row) -> PolicyLayer:
        return PolicyLayer(
            id=str(row["id"]),
            name=str(row["name"]),
            scope=Scope(level=HierarchyLevel(row["scope_level"]), entity_id=str(row["scope_entity_id"])),
            kind=LayerKind(row["kind"]),
            category=LayerCategory(row["category"]),
            priority=int(row["priority"]),
            tie_break=TieBreak(row["tie_break"]),
            effective_from=codec.dt_from_text(row["effective_from"]),
            effective_to=codec.dt_from_text(row["effective_to"]),
            recurrence=codec.recurrence_from_dict(codec.loads(row["recurrence_json"])),
            windows=tuple(codec.window_from_dict(item) for item in codec.loads(row["windows_json"]) or ()),
            packages=tuple(codec.package_from_dict(item) for item in codec.loads(row["packages_json"]) or ()),
            active=bool(row["active"]),
            approval_status=ApprovalStatus(row["approval_status"]),
            description=str(row["description"] or ""),
            surge_config_id=row["surge_config_id"],
            target_hour_start=codec.dt_from_text(row["target_hour_start"]),
            superseded_at=codec.dt_from_text(row["superseded_at"]),
            superseded_reason=row["superseded_reason"],
        )

    # ----------------------------------------------------------- surge config

    def save_surge_config(self, config: SurgeConfig) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO SurgeConfigs (
                    id, name, scope_level, scope_entity_id, priority,
                    demand_supply_json, surge_params_json, effective_from,
                    effective_to, windows_json, surge_duration_hours, active,
                    materialized_layer_id, last_materialized_at, last_smoothed_pressure
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    config.id,
                    config.name,
                    config.scope.level.value,
                    config.scope.entity_id,
                    config.priority,
                    codec.dumps(codec.demand_supply_to_dict(config.demand_supply)),
                    codec.dumps(codec.surge_params_to_dict(config.surge_params)),
                    codec.dt_to_text(config.effective_from),
                    codec.dt_to_text(config.effective_to),
                    codec.dumps([codec.window_to_dict(w) for w in config.windows]),
                    config.surge_duration_hours,
                    1 if config.active else 0,
                    config.materialized_layer_id,
                    codec.dt_to_text(config.last_materialized_at),
                    config.last_smoothed_pressure,
                ),
            )
            conn.commit()

    def get_surge_config(self, config_id: str) -> Optional[SurgeConfig]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM SurgeConfigs WHERE id = ?;", (config_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_surge_config(row)

    def list_surge_configs(
        self,
        scope: Optional[Scope] = None,
        active_only: bool = False,
    ) -> List[SurgeConfig]:
        query = "SELECT * FROM SurgeConfigs WHERE 1 = 1"
        params: list[object] = []
        if scope is not None:
            query += " AND scope_level = ? AND scope_entity_id = ?"
            params.extend((scope.level.value, scope.entity_id))
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY priority DESC, id ASC;"
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [self._row_to_surge_config(row) for row in cursor.fetchall()]

    def update_surge_demand(self, config_id: str, demand_supply: DemandSupply) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE SurgeConfigs SET demand_supply_json = ? WHERE id = ?;",
                (codec.dumps(codec.demand_supply_to_dict(demand_supply)), config_id),
            )
            conn.commit()

    def replace_surge_layer(
        self,
        config: SurgeConfig,
        new_layer: PolicyLayer,
        now: datetime,
        reason: str,
        smoothed_pressure: Optional[float] = None,
    ) -> List[str]:
        """Supersede the config's unexpired live layers, insert `new_layer`, link it.

        Runs as one transaction; layers whose validity already ended are left
        untouched, and when one of them still holds the target hour the call
        raises `SurgeTargetTakenError` without writing. Layers with no
        `effective_to` are never superseded. Returns the superseded layer ids.
        """
        now_text = codec.dt_to_text(now)
        target_text = codec.dt_to_text(new_layer.target_hour_start)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("BEGIN IMMEDIATE;")
                placeholders = ", ".join("?" for _ in LIVE_SURGE_STATUSES)
                cursor.execute(
                    f"""
                    SELECT id FROM PolicyLayers
                    WHERE surge_config_id = ?
                      AND approval_status IN ({placeholders})
                      AND effective_to > ?
                    ORDER BY id ASC;
                    """,
                    (config.id, *sorted(status.value for status in LIVE_SURGE_STATUSES), now_text),
                )
                superseded_ids = [str(row["id"]) for row in cursor.fetchall()]
                cursor.executemany(
                    """
                    UPDATE PolicyLayers
                    SET approval_status = ?, active = 0, superseded_at = ?, superseded_reason = ?
                    WHERE id = ?;
                    """,
                    [
                        (ApprovalStatus.SUPERSEDED.value, now_text, reason, layer_id)
                        for layer_id in superseded_ids
                    ],
                )
                retired = sorted(status.value for status in RETIRED_STATUSES)
                cursor.execute(
                    f"""
                    SELECT id FROM PolicyLayers
                    WHERE surge_config_id = ?
                      AND target_hour_start = ?
                      AND approval_status NOT IN ({", ".join("?" for _ in retired)})
                    LIMIT 1;
                    """,
                    (config.id, target_text, *retired),
                )
                taken = cursor.fetchone()
                if taken is not None:
                    raise SurgeTargetTakenError(
                        f"Config {config.id} already materialized layer {taken['id']} for {target_text}",
                        layer_id=str(taken["id"]),
                    )
                cursor.execute(self._LAYER_INSERT, self._layer_params(new_layer))
                cursor.execute(
                    """
                    UPDATE SurgeConfigs
                    SET materialized_layer_id = ?,
                        last_materialized_at = ?,
                        demand_supply_json = ?,
                        last_smoothed_pressure = ?
                    WHERE id = ?;
                    """,
                    (
                        new_layer.id,
                        now_text,
                        codec.dumps(codec.demand_supply_to_dict(config.demand_supply)),
                        smoothed_pressure,
                        config.id,
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise LayerConflictError(
                f"A live surge layer already exists for config {config.id} "
                f"at {codec.dt_to_text(new_layer.target_hour_start)}"
            ) from exc
        except sqlite3.Error as exc:
            raise RuntimeError(f"Surge layer replacement failed: {exc}") from exc
        return superseded_ids

    @staticmethod
    def _row_to_surge_config(row: sqlite3.Row) -> SurgeConfig:
        smoothed = row["last_smoothed_pressure"]
        return SurgeConfig(
            id=str(row["id"]),
            name=str(row["name"]),
            scope=Scope(level=HierarchyLevel(row["scope_level"]), entity_id=str(row["scope_entity_id"])),
            priority=int(row["priority"]),
            demand_supply=codec.demand_supply_from_dict(codec.loads(row["demand_supply_json"])),
            surge_params=codec.surge_params_from_dict(codec.loads(row["surge_params_json"])),
            effective_from=codec.dt_from_text(row["effective_from"]),
            effective_to=codec.dt_from_text(row["effective_to"]),
            windows=tuple(codec.window_from_dict(item) for item in codec.loads(row["windows_json"]) or ()),
            surge_duration_hours=int(row["surge_duration_hours"]),
            active=bool(row["active"]),
            materialized_layer_id=row["materialized_layer_id"],
            last_materialized_at=codec.dt_from_text(row["last_materialized_at"]),
            last_smoothed_pressure=float(smoothed) if smoothed is not None else None,
        )

    # ------------------------------------------------------- demand snapshots

    def save_demand_snapshot(self, snapshot: DemandSnapshot) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO DemandSnapshots (
                    scope_level, scope_entity_id, hour_start, bookings_count,
                    total_attendees, available_capacity, demand_pressure,
                    historical_avg_pressure, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    snapshot.scope.level.value,
                    snapshot.scope.entity_id,
                    codec.dt_to_text(snapshot.hour_start),
                    snapshot.bookings_count,
                    snapshot.total_attendees,
                    snapshot.available_capacity,
                    snapshot.demand_pressure,
                    snapshot.historical_avg_pressure,
                    codec.dt_to_text(snapshot.timestamp),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def get_latest_demand_snapshot(self, scope: Scope) -> Optional[DemandSnapshot]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM DemandSnapshots
                WHERE scope_level = ? AND scope_entity_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1;
                """,
                (scope.level.value, scope.entity_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_snapshot(row)

    def list_demand_history(
        self,
        scope: Scope,
        since: datetime,
        until: datetime,
    ) -> List[DemandSnapshot]:
        """Snapshots with `since <= hour_start < until`, oldest first."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM DemandSnapshots
                WHERE scope_level = ?
                  AND scope_entity_id = ?
                  AND hour_start >= ?
                  AND hour_start < ?
                ORDER BY hour_start ASC, id ASC;
                """,
                (scope.level.value, scope.entity_id, codec.dt_to_text(since), codec.dt_to_text(until)),
            )
            return [self._row_to_snapshot(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> DemandSnapshot:
        return DemandSnapshot(
            scope=Scope(level=HierarchyLevel(row["scope_level"]), entity_id=str(row["scope_entity_id"])),
            hour_start=codec.dt_from_text(row["hour_start"]),
            bookings_count=int(row["bookings_count"]),
            total_attendees=int(row["total_attendees"]),
            available_capacity=float(row["available_capacity"]),
            demand_pressure=float(row["demand_pressure"]),
            historical_avg_pressure=float(row["historical_avg_pressure"]),
            timestamp=codec.dt_from_text(row["timestamp"]),
        )

    # ------------------------------------------------------------- demo seed

    def seed_demo_data_if_empty(self) -> None:
        """Seed a small demo hierarchy, layers and surge config when no nodes exist."""
        try:
            if self.count_nodes() > 0:
                logger.info("Hierarchy already present; skipping demo seed")
                return
            for node in _demo_nodes():
                self.save_node(node)
            for layer in _demo_layers():
                self.save_layer(layer)
            self.save_surge_config(_demo_surge_config())
            logger.info("Demo hierarchy seeded")
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc


_DEMO_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
_WEEKDAYS = (
    DayOfWeek.MONDAY,
    DayOfWeek.TUESDAY,
    DayOfWeek.WEDNESDAY,
    DayOfWeek.THURSDAY,
    DayOfWeek.FRIDAY,
)


def _demo_nodes() -> Sequence[HierarchyNode]:
    weekday_hours = (TimeSlot(start_time="08:00", end_time="22:00"),)
    return (
        HierarchyNode(
            id="acct-demo",
            name="Demo Account",
            level=HierarchyLevel.ACCOUNT,
            timezone="America/New_York",
            default_hourly_rate=40.0,
            default_capacity=CapacityBounds(0, 200, 100, 0),
        ),
        HierarchyNode(
            id="site-downtown",
            name="Downtown Campus",
            level=HierarchyLevel.SITE,
            parent_id="acct-demo",
            operating_hours=OperatingHours(
                weekly_schedule={
                    **{day: weekday_hours for day in _WEEKDAYS},
                    DayOfWeek.SATURDAY: (TimeSlot(start_time="10:00", end_time="18:00"),),
                    DayOfWeek.SUNDAY: (),
                },
                blackouts=(
                    Blackout(
                        id="new-year",
                        date=date(2024, 1, 1),
                        recurring_yearly=True,
                        reason="New Year's Day",
                    ),
                ),
            ),
        ),
        HierarchyNode(
            id="sub-main-hall",
            name="Main Hall",
            level=HierarchyLevel.SUBAREA,
            parent_id="site-downtown",
            default_hourly_rate=60.0,
            default_capacity=CapacityBounds(10, 120, 80, 20),
        ),
        HierarchyNode(
            id="venue-hall-a",
            name="Hall A",
            level=HierarchyLevel.VENUE_EVENT,
            parent_id="sub-main-hall",
        ),
    )


def _demo_layers() -> Sequence[PolicyLayer]:
    return (
        PolicyLayer(
            id="rs-site-daytime",
            name="Downtown Daytime",
            scope=Scope(HierarchyLevel.SITE, "site-downtown"),
            kind=LayerKind.TIME_WINDOW,
            effective_from=_DEMO_EPOCH,
            priority=50,
            windows=(PolicyWindow(start_time="08:00", end_time="17:00", value=50.0),),
        ),
        PolicyLayer(
            id="rs-hall-evening",
            name="Main Hall Weekday Evening",
            scope=Scope(HierarchyLevel.SUBAREA, "sub-main-hall"),
            kind=LayerKind.TIME_WINDOW,
            effective_from=_DEMO_EPOCH,
            priority=100,
            recurrence=Recurrence(pattern=RecurrencePattern.WEEKLY, days_of_week=_WEEKDAYS),
            windows=(PolicyWindow(start_time="17:00", end_time="22:00", value=90.0),),
        ),
        PolicyLayer(
            id="cs-hall-evening",
            name="Main Hall Evening Capacity",
            scope=Scope(HierarchyLevel.SUBAREA, "sub-main-hall"),
            kind=LayerKind.TIME_WINDOW,
            category=LayerCategory.CAPACITY,
            effective_from=_DEMO_EPOCH,
            priority=100,
            windows=(
                PolicyWindow(
                    start_time="17:00",
                    end_time="22:00",
                    capacity=CapacityBounds(10, 100, 80, 30),
                ),
            ),
        ),
    )


def _demo_surge_config() -> SurgeConfig:
    return SurgeConfig(
        id="surge-main-hall",
        name="Main Hall Surge",
        scope=Scope(HierarchyLevel.SUBAREA, "sub-main-hall"),
        priority=700,
        demand_supply=DemandSupply(current_demand=15, current_supply=10, historical_avg_pressure=1.2),
        surge_params=SurgeParams(),
        effective_from=_DEMO_EPOCH,
        effective_to=_DEMO_EPOCH + timedelta(days=3650),
    )
