"""
Notification building and rendering. Delivery is a row in the notifications
table; the dashboard polls it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from .db import push_notification

logger = logging.getLogger(__name__)

ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
LEVEL_UP = "level_up"
STREAK_REMINDER = "streak_reminder"
DAILY_SUMMARY = "daily_summary"

NOTIFICATION_TYPES = (ACHIEVEMENT_UNLOCKED, LEVEL_UP, STREAK_REMINDER, DAILY_SUMMARY)

# which user setting gates which type
SETTING_FOR_TYPE = {
    ACHIEVEMENT_UNLOCKED: "notify_achievements",
    LEVEL_UP: "notify_level_up",
    STREAK_REMINDER: "notify_streak_reminder",
    DAILY_SUMMARY: "notify_daily_summary",
}


@dataclass(frozen=True)
class Notification:
    type: str
    user_id: str
    object_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {self.type}")


def render(notification: Notification) -> tuple[str, str]:
    """(subject, message) for the dashboard."""
    p = notification.payload
    if notification.type == ACHIEVEMENT_UNLOCKED:
        name = p.get("name", "Unknown Achievement")
        description = p.get("description", "")
        message = f'You unlocked the "{name}" achievement: {description}' if description else ""
        return f"Achievement Unlocked: {name}", message
    if notification.type == LEVEL_UP:
        return (
            f"Level Up! You reached level {p.get('level', 1)}",
            f"Congratulations! You are now a {p.get('rank_title', 'Task Novice')}",
        )
    if notification.type == STREAK_REMINDER:
        return (
            f"Don't break your {p.get('streak', 0)}-day streak!",
            f"You have {p.get('hours_left', 0)} hours left to complete at least one task to maintain your streak.",
        )
    tasks = p.get("tasks_completed", 0)
    if tasks > 0:
        message = f"Great job! You completed {tasks} tasks and earned {p.get('xp_earned', 0)} XP."
    else:
        message = "No tasks completed. Start your quest today!"
    return "Daily Quest Summary", message


def wants(settings: dict, notification_type: str) -> bool:
    return bool(settings.get(SETTING_FOR_TYPE[notification_type], False))


def send(db, notification: Notification) -> bool:
    """Fire-and-forget. Failures are logged, never raised."""
    subject, message = render(notification)
    try:
        push_notification(db, {
            "user_id": notification.user_id,
            "type": notification.type,
            "object_id": notification.object_id,
            "subject": subject,
            "message": message,
            "payload": notification.payload,
        })
        return True
    except Exception as e:
        logger.warning("Notification %s for %s not delivered: %s",
                       notification.type, notification.user_id, e)
        return False


def send_all(db, notifications: list[Notification]) -> int:
    return sum(1 for n in notifications if send(db, n))
