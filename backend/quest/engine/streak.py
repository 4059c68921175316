"""
Streak tracking: pure functions, no DB access.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum

from ..errors import InvalidInputError

CALENDAR = "calendar"
ROLLING = "rolling"


class StreakState(str, Enum):
    NO_STREAK = "no_streak"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class StreakPolicy:
    grace_period: timedelta = timedelta(hours=48)
    # 'calendar': same date in `tz` counts as the same day
    # 'rolling':  anything within 24h of the last completion counts as the same day
    day_boundary: str = CALENDAR
    tz: tzinfo = timezone.utc
    # calendar mode: how many local days may pass between completions and still continue
    max_day_gap: int = 1

    def __post_init__(self):
        if self.day_boundary not in (CALENDAR, ROLLING):
            raise InvalidInputError(f"day_boundary must be 'calendar' or 'rolling', got {self.day_boundary!r}")
        if self.grace_period <= timedelta(0):
            raise InvalidInputError("grace_period must be positive")
        if self.max_day_gap < 1:
            raise InvalidInputError("max_day_gap must be at least 1")

    def local_date(self, moment: datetime) -> date:
        return as_aware(moment).astimezone(self.tz).date()

    def same_day(self, earlier: datetime, later: datetime) -> bool:
        if self.day_boundary == ROLLING:
            return abs(as_aware(later) - as_aware(earlier)) < timedelta(hours=24)
        return self.local_date(earlier) == self.local_date(later)


DEFAULT_POLICY = StreakPolicy()


@dataclass(frozen=True)
class StreakUpdate:
    current_streak: int
    longest_streak: int
    last_completion_at: datetime
    previous_streak: int
    outcome: str        # 'started' | 'continued' | 'unchanged' | 'reset'

    @property
    def broken(self) -> bool:
        return self.outcome == "reset"


def as_aware(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def grace_deadline(last_completion_at: datetime | None, policy: StreakPolicy = DEFAULT_POLICY) -> datetime | None:
    """
    Last moment a completion still keeps the streak alive. In calendar mode
    that is also capped at the end of the last local day within max_day_gap.
    """
    if last_completion_at is None:
        return None
    last = as_aware(last_completion_at)
    deadline = last + policy.grace_period
    if policy.day_boundary == CALENDAR:
        cutoff = policy.local_date(last) + timedelta(days=policy.max_day_gap + 1)
        day_end = datetime.combine(cutoff, time.min, tzinfo=policy.tz) - timedelta(microseconds=1)
        deadline = min(deadline, day_end)
    return deadline


def streak_state(
    current_streak: int,
    last_completion_at: datetime | None,
    now: datetime,
    policy: StreakPolicy = DEFAULT_POLICY,
) -> StreakState:
    if current_streak <= 0 or last_completion_at is None:
        return StreakState.NO_STREAK
    if as_aware(now) > grace_deadline(last_completion_at, policy):
        return StreakState.EXPIRED
    return StreakState.ACTIVE


def effective_streak(
    current_streak: int,
    last_completion_at: datetime | None,
    now: datetime,
    policy: StreakPolicy = DEFAULT_POLICY,
) -> int:
    """Stored streak, or 0 once the grace window has passed (nothing is written)."""
    if streak_state(current_streak, last_completion_at, now, policy) is StreakState.ACTIVE:
        return current_streak
    return 0


def advance_streak(
    current_streak: int,
    longest_streak: int,
    last_completion_at: datetime | None,
    occurred_at: datetime,
    policy: StreakPolicy = DEFAULT_POLICY,
) -> StreakUpdate:
    """
    Apply one completion at `occurred_at`.

    - first completion, no stored streak, or past the grace deadline -> 1
      (in calendar mode a skipped local day is past the deadline)
    - same day as the last completion -> unchanged
    - otherwise -> +1
    An event older than the last completion never moves the streak.
    """
    if current_streak < 0 or longest_streak < 0:
        raise InvalidInputError("streak counters must be non-negative")

    occurred_at = as_aware(occurred_at)

    if last_completion_at is None or current_streak == 0:
        outcome = "started" if last_completion_at is None else "reset"
        new_streak = 1
        last_seen = occurred_at if last_completion_at is None else max(as_aware(last_completion_at), occurred_at)
    else:
        last = as_aware(last_completion_at)
        if occurred_at <= last:
            outcome, new_streak = "unchanged", current_streak
        elif occurred_at > grace_deadline(last, policy):
            outcome, new_streak = "reset", 1
        elif policy.same_day(last, occurred_at):
            outcome, new_streak = "unchanged", current_streak
        else:
            outcome, new_streak = "continued", current_streak + 1
        last_seen = max(last, occurred_at)

    return StreakUpdate(
        current_streak=new_streak,
        longest_streak=max(longest_streak, new_streak),
        last_completion_at=last_seen,
        previous_streak=current_streak,
        outcome=outcome,
    )
