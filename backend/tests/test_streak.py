from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from quest.engine.streak import (
    ROLLING, StreakPolicy, StreakState,
    advance_streak, effective_streak, grace_deadline, streak_state,
)
from quest.errors import InvalidInputError

MONDAY_10 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class TestAdvanceStreak:
    def test_first_completion_starts_streak(self):
        u = advance_streak(0, 0, None, MONDAY_10)
        assert (u.current_streak, u.longest_streak, u.outcome) == (1, 1, "started")
        assert u.last_completion_at == MONDAY_10

    def test_same_calendar_day_does_not_increment(self):
        u = advance_streak(4, 6, MONDAY_10, MONDAY_10 + timedelta(hours=5))
        assert u.current_streak == 4
        assert u.outcome == "unchanged"
        assert u.last_completion_at == MONDAY_10 + timedelta(hours=5)

    def test_next_day_increments(self):
        u = advance_streak(4, 4, MONDAY_10, MONDAY_10 + timedelta(days=1))
        assert (u.current_streak, u.longest_streak, u.outcome) == (5, 5, "continued")

    def test_gap_over_grace_resets(self):
        u = advance_streak(9, 9, MONDAY_10, MONDAY_10 + timedelta(hours=48, seconds=1))
        assert u.current_streak == 1
        assert u.longest_streak == 9
        assert u.broken

    def test_gap_exactly_grace_continues_in_rolling_mode(self):
        policy = StreakPolicy(day_boundary=ROLLING)
        u = advance_streak(2, 2, MONDAY_10, MONDAY_10 + timedelta(hours=48), policy)
        assert u.current_streak == 3

    def test_skipped_calendar_day_resets_within_grace(self):
        # Tuesday skipped; only 47h55m passed
        last = datetime(2026, 3, 2, 0, 10, tzinfo=timezone.utc)
        u = advance_streak(5, 5, last, datetime(2026, 3, 4, 0, 5, tzinfo=timezone.utc))
        assert (u.current_streak, u.longest_streak, u.outcome) == (1, 5, "reset")

    def test_late_next_day_continues(self):
        u = advance_streak(5, 5, MONDAY_10, datetime(2026, 3, 3, 23, 59, tzinfo=timezone.utc))
        assert (u.current_streak, u.outcome) == (6, "continued")

    def test_wider_day_gap_is_configurable(self):
        policy = StreakPolicy(max_day_gap=2)
        last = datetime(2026, 3, 2, 0, 10, tzinfo=timezone.utc)
        u = advance_streak(5, 5, last, datetime(2026, 3, 4, 0, 5, tzinfo=timezone.utc), policy)
        assert u.current_streak == 6

    def test_zero_streak_with_history_restarts(self):
        u = advance_streak(0, 7, MONDAY_10, MONDAY_10 + timedelta(days=1))
        assert (u.current_streak, u.longest_streak, u.outcome) == (1, 7, "reset")

    def test_out_of_order_event_does_not_rewind(self):
        u = advance_streak(3, 3, MONDAY_10, MONDAY_10 - timedelta(days=1))
        assert u.current_streak == 3
        assert u.last_completion_at == MONDAY_10
        assert u.outcome == "unchanged"

    def test_naive_datetimes_are_utc(self):
        u = advance_streak(1, 1, MONDAY_10, datetime(2026, 3, 3, 9, 0))
        assert u.current_streak == 2
        assert u.last_completion_at.tzinfo is not None

    def test_negative_counters_rejected(self):
        with pytest.raises(InvalidInputError):
            advance_streak(-1, 0, None, MONDAY_10)

    def test_longest_never_decreases(self):
        current, longest, last = 0, 0, None
        seen = []
        offsets = [0, 20, 30, 50, 100, 101, 150, 155, 300, 310, 330, 360]
        for hours in offsets:
            u = advance_streak(current, longest, last, MONDAY_10 + timedelta(hours=hours))
            assert u.longest_streak >= longest
            assert u.longest_streak >= u.current_streak
            current, longest, last = u.current_streak, u.longest_streak, u.last_completion_at
            seen.append(longest)
        assert seen == sorted(seen)


class TestPolicy:
    def test_calendar_day_uses_timezone(self):
        tz = ZoneInfo("America/New_York")
        policy = StreakPolicy(tz=tz)
        # 23:00 and 01:00 UTC are the same New York evening
        a = datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc)
        b = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)
        assert advance_streak(2, 2, a, b, policy).current_streak == 2
        assert advance_streak(2, 2, a, b).current_streak == 3

    def test_rolling_mode_counts_within_24h_as_same_day(self):
        policy = StreakPolicy(day_boundary=ROLLING)
        assert advance_streak(2, 2, MONDAY_10, MONDAY_10 + timedelta(hours=23), policy).current_streak == 2
        assert advance_streak(2, 2, MONDAY_10, MONDAY_10 + timedelta(hours=25), policy).current_streak == 3

    def test_custom_grace_period(self):
        policy = StreakPolicy(grace_period=timedelta(hours=30))
        assert advance_streak(5, 5, MONDAY_10, MONDAY_10 + timedelta(hours=31), policy).current_streak == 1

    def test_invalid_policy_rejected(self):
        with pytest.raises(InvalidInputError):
            StreakPolicy(day_boundary="weekly")
        with pytest.raises(InvalidInputError):
            StreakPolicy(grace_period=timedelta(0))
        with pytest.raises(InvalidInputError):
            StreakPolicy(max_day_gap=0)


class TestStreakState:
    def test_grace_deadline(self):
        # end of Tuesday comes before Monday 10:00 + 48h
        assert grace_deadline(MONDAY_10) == datetime(2026, 3, 3, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert grace_deadline(MONDAY_10, StreakPolicy(day_boundary=ROLLING)) == MONDAY_10 + timedelta(hours=48)
        short = StreakPolicy(grace_period=timedelta(hours=20))
        assert grace_deadline(MONDAY_10, short) == MONDAY_10 + timedelta(hours=20)
        assert grace_deadline(None) is None

    def test_states(self):
        assert streak_state(0, None, MONDAY_10) is StreakState.NO_STREAK
        assert streak_state(3, MONDAY_10, MONDAY_10 + timedelta(hours=37)) is StreakState.ACTIVE
        assert streak_state(3, MONDAY_10, MONDAY_10 + timedelta(hours=38)) is StreakState.EXPIRED

    def test_effective_streak_collapses_after_grace(self):
        assert effective_streak(6, MONDAY_10, MONDAY_10 + timedelta(hours=12)) == 6
        assert effective_streak(6, MONDAY_10, MONDAY_10 + timedelta(days=3)) == 0
