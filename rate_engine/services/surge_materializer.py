"""Turn surge configs plus demand snapshots into time-boxed surge layers.

Materialization is the only side-effecting step of the engine. Calls for the
same (scope, target hour) are serialized in-process, and the repository keeps
at most one live layer per config and target hour, so a racing writer from
another process surfaces as a conflict instead of a duplicate layer. Re-running
an hour whose layer has already expired is reported as already materialized.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock, RLock
from typing import Any, Callable, Iterator, Optional
from uuid import uuid4

from rate_engine.domain.constraints import (
    PolicyValidationError,
    SurgeParameterError,
    validate_demand_supply,
    validate_surge_config,
)
from rate_engine.domain.models import (
    RETIRED_STATUSES,
    ApprovalStatus,
    DemandSnapshot,
    DemandSupply,
    LayerCategory,
    LayerKind,
    PolicyLayer,
    PolicyWindow,
    Scope,
    SurgeConfig,
    TieBreak,
)
from rate_engine.repository.codec import dt_to_text
from rate_engine.repository.data_repository import (
    DataRepository,
    LayerConflictError,
    SurgeTargetTakenError,
)
from rate_engine.services.surge_calculator import (
    InvalidSurgeParametersError,
    SurgeCalculation,
    SurgeError,
    calculate_surge_multiplier,
)
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import next_hour_bucket, utc_now


logger = get_logger(__name__)

SUPERSEDED_REASON = "Replaced by newer surge prediction"
FULL_DAY_WINDOW = ("00:00", "24:00")


class SurgeConfigNotFoundError(SurgeError):
    """Raised when a surge config id or scope has no matching config."""


class ConcurrentMaterializationConflictError(SurgeError):
    """Raised when another writer already produced a live layer for the same hour."""


class SurgeHourAlreadyMaterializedError(SurgeError):
    """Raised when the target hour already has a live layer that can no longer be superseded."""

    def __init__(self, message: str, layer_id: str) -> None:
        super().__init__(message)
        self.layer_id = layer_id


class LayerNotFoundError(SurgeError):
    """Raised when a policy layer id does not exist."""


class LayerStatusError(SurgeError):
    """Raised when a layer cannot move to the requested approval status."""


@dataclass(frozen=True)
class MaterializationResult:
    config_id: str
    created_layer_id: str
    multiplier: float
    approval_status: ApprovalStatus
    superseded_layer_ids: tuple[str, ...]
    effective_from: datetime
    effective_to: datetime
    demand_supply: DemandSupply
    calculation: SurgeCalculation

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "created_layer_id": self.created_layer_id,
            "multiplier": self.multiplier,
            "approval_status": self.approval_status.value,
            "superseded_layer_ids": list(self.superseded_layer_ids),
            "effective_from": dt_to_text(self.effective_from),
            "effective_to": dt_to_text(self.effective_to),
            "demand_supply": {
                "current_demand": self.demand_supply.current_demand,
                "current_supply": self.demand_supply.current_supply,
                "historical_avg_pressure": self.demand_supply.historical_avg_pressure,
            },
            "calculation": self.calculation.to_dict(),
        }


class SurgeMaterializationService:
    """Creates DRAFT surge layers and manages their approval lifecycle."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock or utc_now
        # (scope, target hour) -> [lock, callers holding or waiting]
        self._locks: dict[tuple[Scope, datetime], list[Any]] = {}
        self._locks_guard = Lock()

    @contextmanager
    def _serialized(self, scope: Scope, target_hour: datetime) -> Iterator[None]:
        """Single-flight section per (scope, target hour); idle entries are dropped."""
        key = (scope, target_hour)
        with self._locks_guard:
            entry = self._locks.setdefault(key, [RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def get_config(self, config_id: str) -> SurgeConfig:
        config = self._repository.get_surge_config(config_id)
        if config is None:
            raise SurgeConfigNotFoundError(f"Surge config {config_id} not found")
        return config

    def save_config(self, config: SurgeConfig) -> SurgeConfig:
        try:
            validate_surge_config(config)
        except (SurgeParameterError, PolicyValidationError) as exc:
            raise InvalidSurgeParametersError(str(exc)) from exc
        self._repository.save_surge_config(config)
        logger.info(
            "Surge config saved | config_id=%s | scope=%s:%s",
            config.id,
            config.scope.level.value,
            config.scope.entity_id,
        )
        return config

    def update_demand(self, config_id: str, demand_supply: DemandSupply) -> SurgeConfig:
        """Replace the stored demand/supply inputs used when no snapshot is available."""
        config = self.get_config(config_id)
        try:
            validate_demand_supply(demand_supply)
        except SurgeParameterError as exc:
            raise InvalidSurgeParametersError(str(exc)) from exc
        self._repository.update_surge_demand(config_id, demand_supply)
        return replace(config, demand_supply=demand_supply)

    def _demand_from_snapshot(self, config: SurgeConfig, snapshot: DemandSnapshot) -> DemandSupply:
        current_supply = config.demand_supply.current_supply
        if current_supply <= 0:
            current_supply = snapshot.available_capacity / self._settings.surge_supply_normalization_divisor
        return DemandSupply(
            current_demand=float(snapshot.bookings_count),
            current_supply=current_supply,
            historical_avg_pressure=snapshot.historical_avg_pressure,
        )

    def _build_layer(
        self,
        config: SurgeConfig,
        multiplier: float,
        effective_from: datetime,
        effective_to: datetime,
        calculation: SurgeCalculation,
    ) -> PolicyLayer:
        if config.windows:
            windows = tuple(replace(window, value=multiplier, capacity=None) for window in config.windows)
        else:
            windows = (PolicyWindow(*FULL_DAY_WINDOW, value=multiplier),)
        return PolicyLayer(
            id=f"surge-{uuid4().hex[:16]}",
            name=f"SURGE: {config.name}",
            scope=config.scope,
            kind=LayerKind.SURGE_MULTIPLIER,
            category=LayerCategory.RATE,
            priority=self._settings.surge_priority_base + config.priority,
            tie_break=TieBreak.PRIORITY,
            effective_from=effective_from,
            effective_to=effective_to,
            windows=windows,
            active=False,
            approval_status=ApprovalStatus.DRAFT,
            description=(
                f"Surge x{multiplier:.4f} | pressure={calculation.pressure:.4f} "
                f"| normalized={calculation.normalized_pressure:.4f}"
            ),
            surge_config_id=config.id,
            target_hour_start=effective_from,
        )

    def materialize(
        self,
        config_id: str,
        snapshot: Optional[DemandSnapshot] = None,
        use_latest_snapshot: bool = True,
    ) -> MaterializationResult:
        """Create the next DRAFT surge layer for a config.

        With a snapshot (given or the latest stored for the scope) the layer
        starts at the hour bucket after the snapshot hour. Without one, it
        starts at the config's `effective_from`. Either way it lasts
        `surge_duration_hours`.
        """
        config = self.get_config(config_id)
        if snapshot is None and use_latest_snapshot:
            snapshot = self._repository.get_latest_demand_snapshot(config.scope)

        if snapshot is not None:
            demand_supply = self._demand_from_snapshot(config, snapshot)
            effective_from = next_hour_bucket(snapshot.hour_start)
        else:
            demand_supply = config.demand_supply
            effective_from = config.effective_from
        effective_to = effective_from + timedelta(hours=config.surge_duration_hours)

        previous = config.last_smoothed_pressure if self._settings.surge_ema_smoothing_enabled else None
        # Invalid parameters must fail before any write.
        calculation = calculate_surge_multiplier(
            demand_supply,
            config.surge_params,
            previous_smoothed=previous,
            supply_divisor=self._settings.surge_supply_normalization_divisor,
        )

        with self._serialized(config.scope, effective_from):
            now = self._clock()
            layer = self._build_layer(config, calculation.multiplier, effective_from, effective_to, calculation)
            try:
                superseded = self._repository.replace_surge_layer(
                    replace(config, demand_supply=demand_supply),
                    layer,
                    now=now,
                    reason=SUPERSEDED_REASON,
                    smoothed_pressure=calculation.smoothed_pressure,
                )
            except SurgeTargetTakenError as exc:
                logger.info(
                    "Surge hour already materialized | config_id=%s | target_hour=%s | layer_id=%s",
                    config.id,
                    dt_to_text(effective_from),
                    exc.layer_id,
                )
                raise SurgeHourAlreadyMaterializedError(str(exc), layer_id=exc.layer_id) from exc
            except LayerConflictError as exc:
                logger.warning(
                    "Surge materialization conflict | config_id=%s | target_hour=%s",
                    config.id,
                    dt_to_text(effective_from),
                )
                raise ConcurrentMaterializationConflictError(str(exc)) from exc

        logger.info(
            "Surge layer materialized | config_id=%s | layer_id=%s | multiplier=%.4f | superseded=%s",
            config.id,
            layer.id,
            calculation.multiplier,
            len(superseded),
        )
        return MaterializationResult(
            config_id=config.id,
            created_layer_id=layer.id,
            multiplier=calculation.multiplier,
            approval_status=layer.approval_status,
            superseded_layer_ids=tuple(superseded),
            effective_from=effective_from,
            effective_to=effective_to,
            demand_supply=demand_supply,
            calculation=calculation,
        )

    def materialize_scope(self, scope: Scope) -> list[MaterializationResult]:
        configs = self._repository.list_surge_configs(scope=scope, active_only=True)
        if not configs:
            raise SurgeConfigNotFoundError(
                f"No active surge config for {scope.level.value} {scope.entity_id}"
            )
        return [self.materialize(config.id) for config in configs]

    def _transition(self, layer_id: str, status: ApprovalStatus, active: bool) -> PolicyLayer:
        layer = self._repository.get_layer(layer_id)
        if layer is None:
            raise LayerNotFoundError(f"Layer {layer_id} not found")
        if layer.approval_status in RETIRED_STATUSES:
            raise LayerStatusError(
                f"Layer {layer_id} is {layer.approval_status.value} and cannot become {status.value}"
            )
        updated = self._repository.update_layer_status(layer_id, status, active)
        if updated is None:
            raise LayerNotFoundError(f"Layer {layer_id} not found")
        logger.info("Layer status changed | layer_id=%s | status=%s", layer_id, status.value)
        return updated

    def approve_layer(self, layer_id: str) -> PolicyLayer:
        return self._transition(layer_id, ApprovalStatus.APPROVED, active=True)

    def reject_layer(self, layer_id: str) -> PolicyLayer:
        return self._transition(layer_id, ApprovalStatus.REJECTED, active=False)
