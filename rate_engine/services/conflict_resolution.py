"""Per-segment candidate matching and winner selection shared by price and capacity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Optional, Sequence

from rate_engine.domain.models import (
    DayOfWeek,
    PolicyLayer,
    PolicyWindow,
    Recurrence,
    RecurrencePattern,
    Segment,
    TieBreak,
)
from rate_engine.services.policy_collector import ranking_key
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import ensure_utc, parse_local_time


logger = get_logger(__name__)


class InvalidRecurrenceError(ValueError):
    """Raised when a layer's recurrence cannot be evaluated against a date."""


@dataclass(frozen=True)
class Candidate:
    layer: PolicyLayer
    value: float
    rule: str
    window: Optional[PolicyWindow] = None

    @property
    def level_rank(self) -> int:
        return self.layer.scope.level.rank


@dataclass(frozen=True)
class Rejection:
    layer_id: str
    layer_name: str
    reason: str


@dataclass(frozen=True)
class Selection:
    winner: Candidate
    ordered: tuple[Candidate, ...]
    rejected: tuple[Rejection, ...]
    strategy: TieBreak


CandidateBuilder = Callable[[PolicyLayer, Segment], Optional[Candidate]]


def recurrence_matches(recurrence: Recurrence, local_date: date) -> bool:
    match recurrence.pattern:
        case RecurrencePattern.NONE | RecurrencePattern.DAILY | RecurrencePattern.YEARLY:
            return True
        case RecurrencePattern.WEEKLY:
            if not recurrence.days_of_week:
                raise InvalidRecurrenceError("WEEKLY recurrence requires at least one day")
            return DayOfWeek.from_date(local_date) in recurrence.days_of_week
        case RecurrencePattern.MONTHLY:
            day_of_month = recurrence.day_of_month
            if day_of_month is None or not 1 <= day_of_month <= 31:
                raise InvalidRecurrenceError(
                    f"MONTHLY recurrence requires day_of_month in 1..31, got {day_of_month!r}"
                )
            return local_date.day == day_of_month
    raise InvalidRecurrenceError(f"unsupported recurrence pattern {recurrence.pattern!r}")


def is_effective_at(layer: PolicyLayer, moment: datetime) -> bool:
    """Half-open validity check ``[effective_from, effective_to)``."""
    moment = ensure_utc(moment)
    if ensure_utc(layer.effective_from) > moment:
        return False
    return layer.effective_to is None or moment < ensure_utc(layer.effective_to)


def window_covering(windows: Sequence[PolicyWindow], local_time: str) -> Optional[PolicyWindow]:
    minute = parse_local_time(local_time)
    for window in windows:
        if parse_local_time(window.start_time) <= minute < parse_local_time(window.end_time):
            return window
    return None


def gather_candidates(
    layers: Iterable[PolicyLayer],
    segment: Segment,
    build: CandidateBuilder,
) -> tuple[list[Candidate], list[Rejection]]:
    """Return layers that apply to ``segment`` plus layers excluded for bad recurrence."""
    candidates: list[Candidate] = []
    excluded: list[Rejection] = []
    for layer in layers:
        if not is_effective_at(layer, segment.start):
            continue
        try:
            matches = recurrence_matches(layer.recurrence, segment.local_date)
        except InvalidRecurrenceError as exc:
            logger.warning(
                "Layer excluded for invalid recurrence | layer_id=%s | segment_start=%s | error=%s",
                layer.id,
                segment.start.isoformat(),
                exc,
            )
            excluded.append(
                Rejection(layer_id=layer.id, layer_name=layer.name, reason=f"Invalid recurrence: {exc}")
            )
            continue
        if not matches:
            continue
        candidate = build(layer, segment)
        if candidate is not None:
            candidates.append(candidate)
    return candidates, excluded


def _describe_loss(loser: Candidate, winner: Candidate, strategy: TieBreak) -> str:
    if strategy is TieBreak.HIGHEST_VALUE and loser.value != winner.value:
        return f"Lower value ({loser.value:.2f} vs {winner.value:.2f})"
    if strategy is TieBreak.LOWEST_VALUE and loser.value != winner.value:
        return f"Higher value ({loser.value:.2f} vs {winner.value:.2f})"
    if loser.level_rank != winner.level_rank:
        return (
            f"Less specific level ({loser.layer.scope.level.value} "
            f"vs {winner.layer.scope.level.value})"
        )
    if loser.layer.priority != winner.layer.priority:
        return f"Lower priority ({loser.layer.priority} vs {winner.layer.priority})"
    return f"Tied with {winner.layer.id}; ordered after it"


def select_winner(candidates: Sequence[Candidate]) -> Selection:
    """Order by (level rank, priority) and apply the top candidate's tie-break."""
    if not candidates:
        raise ValueError("select_winner requires at least one candidate")

    ordered = tuple(sorted(candidates, key=lambda candidate: ranking_key(candidate.layer)))
    top = ordered[0]
    strategy = top.layer.tie_break

    match strategy:
        case TieBreak.PRIORITY:
            winner = top
        case TieBreak.HIGHEST_VALUE:
            winner = max(ordered, key=lambda candidate: candidate.value)
        case TieBreak.LOWEST_VALUE:
            winner = min(ordered, key=lambda candidate: candidate.value)
        case _:
            raise ValueError(f"unsupported tie-break strategy {strategy!r}")

    rejected = tuple(
        Rejection(
            layer_id=candidate.layer.id,
            layer_name=candidate.layer.name,
            reason=_describe_loss(candidate, winner, strategy),
        )
        for candidate in ordered
        if candidate is not winner
    )
    return Selection(winner=winner, ordered=ordered, rejected=rejected, strategy=strategy)
