"""Demand snapshot building from booking activity and stored pressure history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import pandas as pd

from rate_engine.domain.models import DemandSnapshot, Scope
from rate_engine.repository.data_repository import DataRepository
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import ensure_utc, floor_to_hour, utc_now


logger = get_logger(__name__)


class DemandValidationError(Exception):
    """Raised when snapshot inputs are invalid."""


@dataclass(frozen=True)
class BookingEvent:
    start: datetime
    attendees: int = 1


class DemandSnapshotService:
    """Aggregates bookings per hour bucket and attaches the historical baseline."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock or utc_now

    def historical_average(self, scope: Scope, hour_start: datetime) -> float:
        """Mean pressure of the same weekday and hour over the trailing window."""
        hour_start = floor_to_hour(ensure_utc(hour_start))
        since = hour_start - timedelta(days=self._settings.demand_history_window_days)
        history = self._repository.list_demand_history(scope, since, hour_start)
        default = self._settings.demand_default_historical_pressure
        if not history:
            return default

        frame = pd.DataFrame(
            {
                "hour_start": pd.to_datetime([item.hour_start for item in history], utc=True),
                "demand_pressure": [item.demand_pressure for item in history],
            }
        )
        matched = frame[
            (frame["hour_start"].dt.dayofweek == hour_start.weekday())
            & (frame["hour_start"].dt.hour == hour_start.hour)
        ]
        if matched.empty:
            return default
        average = float(matched["demand_pressure"].mean())
        if not average > 0:
            return default
        return average

    def build_snapshot(
        self,
        scope: Scope,
        hour_start: datetime,
        bookings_count: int,
        available_capacity: float,
        total_attendees: int = 0,
        persist: bool = True,
    ) -> DemandSnapshot:
        if bookings_count < 0:
            raise DemandValidationError("bookings_count must be >= 0")
        if total_attendees < 0:
            raise DemandValidationError("total_attendees must be >= 0")
        if available_capacity <= 0:
            raise DemandValidationError("available_capacity must be > 0")

        bucket = floor_to_hour(ensure_utc(hour_start))
        pressure = bookings_count / (available_capacity / self._settings.demand_capacity_unit)
        snapshot = DemandSnapshot(
            scope=scope,
            hour_start=bucket,
            bookings_count=bookings_count,
            total_attendees=total_attendees,
            available_capacity=float(available_capacity),
            demand_pressure=pressure,
            historical_avg_pressure=self.historical_average(scope, bucket),
            timestamp=self._clock(),
        )
        if persist:
            self._repository.save_demand_snapshot(snapshot)
        logger.info(
            "Demand snapshot built | scope=%s:%s | hour=%s | bookings=%s | pressure=%.4f | historical=%.4f",
            scope.level.value,
            scope.entity_id,
            bucket.isoformat(),
            bookings_count,
            pressure,
            snapshot.historical_avg_pressure,
        )
        return snapshot

    def snapshots_from_events(
        self,
        scope: Scope,
        events: Sequence[BookingEvent],
        available_capacity: float,
        persist: bool = True,
    ) -> list[DemandSnapshot]:
        """Group booking events into hour buckets and build one snapshot per bucket."""
        if not events:
            return []
        frame = pd.DataFrame(
            {
                "start": pd.to_datetime([ensure_utc(event.start) for event in events], utc=True),
                "attendees": [int(event.attendees) for event in events],
            }
        )
        frame["hour_start"] = frame["start"].dt.floor("h")
        grouped = (
            frame.groupby("hour_start")
            .agg(bookings_count=("start", "size"), total_attendees=("attendees", "sum"))
            .sort_index()
        )
        return [
            self.build_snapshot(
                scope=scope,
                hour_start=bucket.to_pydatetime(),
                bookings_count=int(row.bookings_count),
                total_attendees=int(row.total_attendees),
                available_capacity=available_capacity,
                persist=persist,
            )
            for bucket, row in grouped.iterrows()
        ]
