from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 24 * MINUTES_PER_HOUR


def _plural(value: int, unit: str) -> str:
    return f'{value} {unit}' if value == 1 else f'{value} {unit}s'


def format_time_text(minutes: int) -> str:
    """Human label for an estimate: ``5 minutes``, ``1 hour``, ``90 minutes``, ``1 day``."""
    if minutes >= MINUTES_PER_DAY and minutes % MINUTES_PER_DAY == 0:
        return _plural(minutes // MINUTES_PER_DAY, 'day')
    if minutes >= MINUTES_PER_HOUR and minutes % MINUTES_PER_HOUR == 0:
        return _plural(minutes // MINUTES_PER_HOUR, 'hour')
    return _plural(minutes, 'minute')


@dataclass(frozen=True)
class Countdown:
    estimated_minutes: int
    set_at: datetime
    remaining_ms: int
    percent_complete: float
    expired: bool

    @property
    def time_text(self) -> str:
        return format_time_text(self.estimated_minutes)

    def as_dict(self) -> dict[str, Any]:
        return {
            'estimated_minutes': self.estimated_minutes,
            'time_text': self.time_text,
            'set_at': self.set_at,
            'remaining_ms': self.remaining_ms,
            'percent_complete': self.percent_complete,
            'expired': self.expired,
        }


def compute_countdown(file, now: datetime | None = None) -> Countdown | None:
    minutes = getattr(file, 'estimated_processing_time', None)
    set_at = getattr(file, 'estimated_processing_time_set_at', None)
    if not minutes or set_at is None:
        return None

    current = now or datetime.now(UTC)
    if set_at.tzinfo is None:
        set_at = set_at.replace(tzinfo=UTC)

    total_ms = minutes * 60_000
    elapsed_ms = max(0, int((current - set_at).total_seconds() * 1000))
    remaining_ms = max(0, total_ms - elapsed_ms)
    percent = min(100.0, round(elapsed_ms / total_ms * 100, 2))
    return Countdown(
        estimated_minutes=minutes,
        set_at=set_at,
        remaining_ms=remaining_ms,
        percent_complete=percent,
        expired=remaining_ms == 0,
    )
