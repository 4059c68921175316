"""
Completion flow: one task-completion event in, XP / streak / achievements out.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .db import (
    get_progress, get_unlocked_keys, get_history_between, get_user_settings,
    commit_completion, is_already_processed, make_source_key,
)
from .engine.achievements import (
    ACHIEVEMENTS, ACHIEVEMENT_BY_KEY, AchievementSnapshot, evaluate_achievements,
)
from .engine.streak import DEFAULT_POLICY, StreakPolicy, StreakUpdate, advance_streak, as_aware, grace_deadline
from .engine.xp import DEFAULT_TABLE, ProgressionTable, calculate_level, calculate_xp, get_rank_title
from .errors import ConcurrentUpdateError, PersistenceError
from .models import DEFAULT_USER_SETTINGS, CompletionEvent, UserProgress, parse_timestamp
from .notifications import ACHIEVEMENT_UNLOCKED, LEVEL_UP, Notification, send_all, wants

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


@dataclass
class CompletionPlan:
    """Everything one completion will write, computed without touching the DB."""
    previous: UserProgress
    progress: UserProgress
    streak: StreakUpdate
    xp_awarded: int
    history: dict
    new_achievements: list[str] = field(default_factory=list)

    @property
    def leveled_up(self) -> bool:
        return self.progress.level > self.previous.level

    def unlock_rows(self) -> list[dict]:
        unlocked_at = self.streak.last_completion_at.isoformat()
        return [{"achievement_key": key, "unlocked_at": unlocked_at} for key in self.new_achievements]


@dataclass
class CompletionResult:
    status: str                 # 'ok' | 'duplicate'
    task_id: str
    user_id: str
    xp_awarded: int = 0
    lifetime_xp: Optional[int] = None
    level: Optional[int] = None
    previous_level: Optional[int] = None
    rank_title: Optional[str] = None
    leveled_up: bool = False
    current_streak: Optional[int] = None
    longest_streak: Optional[int] = None
    streak_outcome: Optional[str] = None
    grace_deadline: Optional[datetime] = None
    achievements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "xp_awarded": self.xp_awarded,
            "lifetime_xp": self.lifetime_xp,
            "level": self.level,
            "previous_level": self.previous_level,
            "rank_title": self.rank_title,
            "leveled_up": self.leveled_up,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "streak_outcome": self.streak_outcome,
            "grace_deadline": self.grace_deadline.isoformat() if self.grace_deadline else None,
            "achievements": [
                {"key": k, "name": ACHIEVEMENT_BY_KEY[k].name, "rarity": ACHIEVEMENT_BY_KEY[k].rarity}
                for k in self.achievements if k in ACHIEVEMENT_BY_KEY
            ],
        }


def history_window(occurred_at: datetime, policy: StreakPolicy = DEFAULT_POLICY) -> tuple[datetime, datetime]:
    """Span of earlier completions the speed / daily achievements need."""
    occurred_at = as_aware(occurred_at)
    local = occurred_at.astimezone(policy.tz)
    day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return min(day_start, occurred_at - timedelta(hours=1)), occurred_at


def plan_completion(
    progress: UserProgress,
    event: CompletionEvent,
    recent_history: list[dict],
    unlocked_keys: set[str],
    policy: StreakPolicy = DEFAULT_POLICY,
    table: ProgressionTable = DEFAULT_TABLE,
    catalog=ACHIEVEMENTS,
) -> CompletionPlan:
    occurred_at = as_aware(event.occurred_at)

    # 1. streak, 2. XP on the *new* streak, 3. level from new lifetime XP
    streak = advance_streak(
        progress.current_streak, progress.longest_streak,
        progress.last_completion_at, occurred_at, policy,
    )
    xp = calculate_xp(event.priority, streak.current_streak, table)
    lifetime_xp = progress.lifetime_xp + xp
    updated = progress.evolve(
        lifetime_xp=lifetime_xp,
        level=calculate_level(lifetime_xp, table),
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_completion_at=streak.last_completion_at,
        total_tasks=progress.total_tasks + 1,
        high_priority_tasks=progress.high_priority_tasks + (1 if event.priority == "high" else 0),
    )

    # 4. achievements against the updated snapshot
    local_time = occurred_at.astimezone(policy.tz)
    hour_ago = occurred_at - timedelta(hours=1)
    earlier = [parse_timestamp(row.get("completed_at")) for row in recent_history]
    earlier = [t for t in earlier if t is not None and t <= occurred_at]
    snapshot = AchievementSnapshot(
        lifetime_xp=updated.lifetime_xp,
        level=updated.level,
        current_streak=updated.current_streak,
        longest_streak=updated.longest_streak,
        total_tasks=updated.total_tasks,
        high_priority_tasks=updated.high_priority_tasks,
        completed_at=local_time,
        priority=event.priority,
        tasks_last_hour=1 + sum(1 for t in earlier if t > hour_ago),
        tasks_today=1 + sum(1 for t in earlier if policy.local_date(t) == local_time.date()),
    )
    new_keys = evaluate_achievements(snapshot, unlocked_keys, catalog)

    history = {
        "task_id": event.task_id,
        "task_title": event.task_title,
        "priority": event.priority,
        "xp_earned": xp,
        "completed_at": occurred_at.isoformat(),
    }
    return CompletionPlan(
        previous=progress, progress=updated, streak=streak,
        xp_awarded=xp, history=history, new_achievements=new_keys,
    )


def process_completion(
    db,
    event: CompletionEvent,
    policy: StreakPolicy = DEFAULT_POLICY,
    table: ProgressionTable = DEFAULT_TABLE,
    max_attempts: int = MAX_ATTEMPTS,
) -> CompletionResult:
    """
    Load, compute, commit atomically, then notify.
    Raises PersistenceError when nothing could be committed; the caller should retry.
    Notification problems after the commit are logged and swallowed.
    """
    source_key = make_source_key(event.user_id, event.task_id)
    try:
        seen = is_already_processed(db, source_key)
    except Exception as e:
        logger.error("Dedup check failed for %s: %s", event.user_id, e)
        raise PersistenceError(f"could not check completion {event.task_id}") from e
    if seen:
        logger.info("Duplicate completion %s for %s", event.task_id, event.user_id)
        return CompletionResult(status="duplicate", task_id=event.task_id, user_id=event.user_id)

    plan = None
    for attempt in range(1, max_attempts + 1):
        try:
            progress = UserProgress.from_row(event.user_id, get_progress(db, event.user_id))
            since, until = history_window(event.occurred_at, policy)
            recent = get_history_between(db, event.user_id, since, until)
            unlocked = get_unlocked_keys(db, event.user_id)
        except Exception as e:
            logger.error("Could not load progress for %s: %s", event.user_id, e)
            raise PersistenceError(f"could not load progress for {event.user_id}") from e

        plan = plan_completion(progress, event, recent, unlocked, policy, table)

        try:
            status = commit_completion(
                db, source_key, event.user_id, progress.version,
                plan.progress.to_row(), plan.history, plan.unlock_rows(),
            )
        except Exception as e:
            logger.error("Commit failed for %s task %s: %s", event.user_id, event.task_id, e)
            raise PersistenceError(f"could not commit completion for {event.user_id}") from e

        if status == "ok":
            break
        if status == "duplicate":
            logger.info("Duplicate completion %s for %s (detected at commit)", event.task_id, event.user_id)
            return CompletionResult(status="duplicate", task_id=event.task_id, user_id=event.user_id)
        if status != "stale":
            raise PersistenceError(f"unexpected commit status: {status!r}")
        logger.info("Progress for %s changed concurrently (attempt %d/%d)", event.user_id, attempt, max_attempts)
    else:
        raise ConcurrentUpdateError(f"gave up after {max_attempts} attempts for {event.user_id}")

    _notify(db, event.user_id, plan, table)

    logger.info("Completion %s for %s: +%d XP, level %d, streak %d, %d achievements",
                event.task_id, event.user_id, plan.xp_awarded, plan.progress.level,
                plan.progress.current_streak, len(plan.new_achievements))

    return CompletionResult(
        status="ok",
        task_id=event.task_id,
        user_id=event.user_id,
        xp_awarded=plan.xp_awarded,
        lifetime_xp=plan.progress.lifetime_xp,
        level=plan.progress.level,
        previous_level=plan.previous.level,
        rank_title=get_rank_title(plan.progress.level, table),
        leveled_up=plan.leveled_up,
        current_streak=plan.progress.current_streak,
        longest_streak=plan.progress.longest_streak,
        streak_outcome=plan.streak.outcome,
        grace_deadline=grace_deadline(plan.progress.last_completion_at, policy),
        achievements=plan.new_achievements,
    )


def build_notifications(user_id: str, plan: CompletionPlan, settings: dict,
                        table: ProgressionTable = DEFAULT_TABLE) -> list[Notification]:
    out: list[Notification] = []
    if plan.leveled_up and wants(settings, LEVEL_UP):
        level = plan.progress.level
        out.append(Notification(LEVEL_UP, user_id, f"level:{level}", {
            "level": level,
            "previous_level": plan.previous.level,
            "rank_title": get_rank_title(level, table),
        }))
    if wants(settings, ACHIEVEMENT_UNLOCKED):
        for key in plan.new_achievements:
            achievement = ACHIEVEMENT_BY_KEY.get(key)
            if achievement is None:
                continue
            out.append(Notification(ACHIEVEMENT_UNLOCKED, user_id, key, {
                "key": key,
                "name": achievement.name,
                "description": achievement.description,
                "rarity": achievement.rarity,
            }))
    return out


def _notify(db, user_id: str, plan: CompletionPlan, table: ProgressionTable) -> None:
    if not plan.leveled_up and not plan.new_achievements:
        return
    try:
        settings = get_user_settings(db, user_id)
    except Exception as e:
        logger.warning("Could not load settings for %s, using defaults: %s", user_id, e)
        settings = dict(DEFAULT_USER_SETTINGS)
    try:
        send_all(db, build_notifications(user_id, plan, settings, table))
    except Exception:
        logger.exception("Notification dispatch failed for %s", user_id)
