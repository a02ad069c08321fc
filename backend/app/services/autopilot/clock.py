from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


class Clock:
    """Source of "now" for the engine. All values are timezone-aware UTC."""

    def now(self) -> datetime:  # pragma: no cover - interface
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()

    def next_midnight(self) -> datetime:
        """Start of the next UTC day."""
        tomorrow = self.today() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


system_clock = SystemClock()
