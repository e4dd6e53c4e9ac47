"""Per-side countdown clock with Fischer increment.

The clock only reports state. Whoever drives it (GameSession.tick, a UI
timer) decides when a side has flagged and what that means for the game.
"""

from __future__ import annotations

from chessplay.models import ClockState, Side, TimerConfig


class Clock:
    """Remaining time for White and Black, in milliseconds."""

    def __init__(
        self,
        initial_time_ms: int = 0,
        increment_ms: int = 0,
        enabled: bool = False,
    ) -> None:
        if initial_time_ms < 0 or increment_ms < 0:
            raise ValueError("Clock times must be non-negative")
        self._remaining = {Side.WHITE: initial_time_ms, Side.BLACK: initial_time_ms}
        self._increment_ms = increment_ms
        self._enabled = enabled

    @classmethod
    def from_timer(cls, timer: TimerConfig | None) -> Clock:
        """Build a running clock from a timer config, or a disabled one for None."""
        if timer is None:
            return cls()
        return cls(timer.initial_time_ms, timer.increment_ms, enabled=True)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def increment_ms(self) -> int:
        return self._increment_ms

    def remaining(self, side: Side) -> int:
        return self._remaining[side]

    def tick(self, side: Side, elapsed_ms: int) -> int:
        """Take elapsed time off one side's clock, flooring at zero.

        Args:
            side: Side whose clock is running.
            elapsed_ms: Wall-clock time since the previous tick.

        Returns:
            The side's remaining time after the tick.

        Raises:
            ValueError: If elapsed_ms is negative.
        """
        if elapsed_ms < 0:
            raise ValueError(f"elapsed_ms must be non-negative, got {elapsed_ms}")
        self._remaining[side] = max(0, self._remaining[side] - elapsed_ms)
        return self._remaining[side]

    def apply_increment(self, side: Side) -> None:
        """Credit the increment to the side that just completed a move."""
        self._remaining[side] += self._increment_ms

    def is_expired(self, side: Side) -> bool:
        return self._enabled and self._remaining[side] <= 0

    @property
    def state(self) -> ClockState:
        return ClockState(
            white_remaining_ms=self._remaining[Side.WHITE],
            black_remaining_ms=self._remaining[Side.BLACK],
            increment_ms=self._increment_ms,
            enabled=self._enabled,
        )
