"""
Time sources for live trading and deterministic simulation.

Components never call datetime.now() directly; they are handed a Clock so
tests and backtests can move time forward explicitly.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Clock interface for time management."""

    def now(self) -> datetime:
        """Current time as a timezone-aware datetime."""
        ...

    def now_ms(self) -> int:
        """Current time as milliseconds since epoch."""
        ...


class WallClock:
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def now_ms(self) -> int:
        return int(self.now().timestamp() * 1000)


class SimClock:
    """Simulation clock advanced explicitly by the caller."""

    def __init__(self, start_time: datetime | None = None):
        self._current_time = start_time or datetime(2024, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._current_time

    def now_ms(self) -> int:
        return int(self._current_time.timestamp() * 1000)

    def advance(self, new_time: datetime) -> None:
        """
        Move simulation time forward.

        Args:
            new_time: New simulation time (must be >= current time)

        Raises:
            ValueError: If new_time is earlier than the current time
        """
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    def advance_seconds(self, seconds: float) -> None:
        self.advance(self._current_time + timedelta(seconds=seconds))

    def advance_ms(self, ms_delta: int) -> None:
        self.advance(self._current_time + timedelta(milliseconds=ms_delta))

    def set_ms(self, timestamp_ms: int) -> None:
        """Jump to an epoch-millisecond timestamp, ignoring earlier ones."""
        target = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
        if target > self._current_time:
            self._current_time = target
