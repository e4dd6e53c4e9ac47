"""Tests for the per-side countdown clock."""

from __future__ import annotations

import pytest

from chessplay.clock import Clock
from chessplay.models import Side, TimerConfig


class TestClock:

    def test_from_timer(self):
        clock = Clock.from_timer(TimerConfig(60_000, 2_000))
        assert clock.enabled
        assert clock.remaining(Side.WHITE) == 60_000
        assert clock.remaining(Side.BLACK) == 60_000
        assert clock.increment_ms == 2_000

    def test_no_timer_is_disabled(self):
        clock = Clock.from_timer(None)
        assert not clock.enabled
        assert not clock.is_expired(Side.WHITE)

    def test_tick_only_charges_one_side(self):
        clock = Clock(10_000, enabled=True)
        assert clock.tick(Side.WHITE, 3_000) == 7_000
        assert clock.remaining(Side.BLACK) == 10_000

    def test_tick_never_goes_below_zero(self):
        clock = Clock(1_000, enabled=True)
        clock.tick(Side.BLACK, 5_000)
        assert clock.remaining(Side.BLACK) == 0
        clock.tick(Side.BLACK, 5_000)
        assert clock.remaining(Side.BLACK) == 0

    def test_negative_elapsed_rejected(self):
        clock = Clock(1_000, enabled=True)
        with pytest.raises(ValueError):
            clock.tick(Side.WHITE, -1)

    def test_increment_credits_only_mover(self):
        clock = Clock(10_000, 500, enabled=True)
        clock.apply_increment(Side.WHITE)
        assert clock.remaining(Side.WHITE) == 10_500
        assert clock.remaining(Side.BLACK) == 10_000

    def test_expiry(self):
        clock = Clock(100, enabled=True)
        assert not clock.is_expired(Side.WHITE)
        clock.tick(Side.WHITE, 100)
        assert clock.is_expired(Side.WHITE)
        assert not clock.is_expired(Side.BLACK)

    def test_state_snapshot(self):
        clock = Clock(5_000, 100, enabled=True)
        clock.tick(Side.WHITE, 1_000)
        state = clock.state
        assert state.white_remaining_ms == 4_000
        assert state.black_remaining_ms == 5_000
        assert state.remaining(Side.WHITE) == 4_000
        assert state.increment_ms == 100
        assert state.enabled

    def test_negative_config_rejected(self):
        with pytest.raises(ValueError):
            Clock(-1)
