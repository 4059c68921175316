"""
Background jobs: streak reminders and daily summaries.
Jobs only read progress; the only thing they write is notifications.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import Settings, get_settings
from .db import get_client, get_history_between, get_settings_for_users, iter_progress
from .engine.streak import DEFAULT_POLICY, StreakPolicy, StreakState, grace_deadline, streak_state
from .models import UserProgress
from .notifications import DAILY_SUMMARY, STREAK_REMINDER, Notification, send, wants

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_LEAD = timedelta(hours=4)


def due_streak_reminders(
    rows: Iterable[dict],
    now: datetime,
    policy: StreakPolicy = DEFAULT_POLICY,
    lead: timedelta = DEFAULT_REMINDER_LEAD,
) -> list[Notification]:
    """Live streaks whose grace deadline is within `lead` and with nothing done today."""
    due = []
    for row in rows:
        progress = UserProgress.from_row(row["user_id"], row)
        last = progress.last_completion_at
        if streak_state(progress.current_streak, last, now, policy) is not StreakState.ACTIVE:
            continue
        if policy.same_day(last, now):
            continue
        deadline = grace_deadline(last, policy)
        if not (deadline - lead <= now < deadline):
            continue
        due.append(Notification(STREAK_REMINDER, progress.user_id, deadline.isoformat(), {
            "streak": progress.current_streak,
            "hours_left": int((deadline - now).total_seconds() // 3600),
            "expires_at": deadline.isoformat(),
        }))
    return due


def send_streak_reminders(
    db,
    now: Optional[datetime] = None,
    policy: StreakPolicy = DEFAULT_POLICY,
    lead: timedelta = DEFAULT_REMINDER_LEAD,
) -> int:
    now = now or datetime.now(timezone.utc)
    due = due_streak_reminders(iter_progress(db, min_streak=1), now, policy, lead)
    if not due:
        return 0
    settings = get_settings_for_users(db, [n.user_id for n in due])
    sent = sum(1 for n in due if wants(settings.get(n.user_id, {}), STREAK_REMINDER) and send(db, n))
    logger.info("Streak reminders: %d due, %d sent", len(due), sent)
    return sent


def day_bounds(day: date, policy: StreakPolicy = DEFAULT_POLICY) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=policy.tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=policy.tz) - timedelta(microseconds=1)
    return start, end


def summarize_day(history: list[dict]) -> dict:
    return {
        "tasks_completed": len(history),
        "xp_earned": sum(row.get("xp_earned") or 0 for row in history),
    }


def send_daily_summaries(
    db,
    now: Optional[datetime] = None,
    policy: StreakPolicy = DEFAULT_POLICY,
) -> int:
    """Summarize yesterday (in the policy timezone) for users who opted in."""
    now = now or datetime.now(timezone.utc)
    yesterday = policy.local_date(now) - timedelta(days=1)
    start, end = day_bounds(yesterday, policy)

    rows = list(iter_progress(db))
    settings = get_settings_for_users(db, [r["user_id"] for r in rows])
    sent = 0
    for row in rows:
        user_id = row["user_id"]
        if not wants(settings.get(user_id, {}), DAILY_SUMMARY):
            continue
        try:
            summary = summarize_day(get_history_between(db, user_id, start, end))
        except Exception as e:
            logger.error("Daily summary failed for %s: %s", user_id, e)
            continue
        notification = Notification(DAILY_SUMMARY, user_id, yesterday.isoformat(), {
            **summary,
            "level": row.get("level") or 1,
            "streak": row.get("current_streak") or 0,
            "date": yesterday.isoformat(),
        })
        if send(db, notification):
            sent += 1
    logger.info("Daily summaries sent: %d", sent)
    return sent


# ── Scheduler ─────────────────────────────────────────────────────────────────

def _run_streak_reminders() -> None:
    settings = get_settings()
    try:
        send_streak_reminders(get_client(), policy=settings.streak_policy(), lead=settings.reminder_lead)
    except Exception:
        logger.exception("Streak reminder job failed")


def _run_daily_summaries() -> None:
    settings = get_settings()
    try:
        send_daily_summaries(get_client(), policy=settings.streak_policy())
    except Exception:
        logger.exception("Daily summary job failed")


def build_scheduler(settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        timezone=settings.tz,
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        },
    )
    scheduler.add_job(_run_streak_reminders, IntervalTrigger(hours=1),
                      id="streak_reminders", replace_existing=True)
    scheduler.add_job(_run_daily_summaries, CronTrigger(hour=0, minute=5, timezone=settings.tz),
                      id="daily_summaries", replace_existing=True)
    return scheduler
