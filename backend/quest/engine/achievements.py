"""
Achievement definitions and evaluation: pure functions, no DB access.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

RARITY_POINTS = {"common": 10, "rare": 25, "epic": 50, "legendary": 100}


@dataclass(frozen=True)
class AchievementSnapshot:
    """Post-update view of one user, plus what is known about the completion that produced it."""
    lifetime_xp: int
    level: int
    current_streak: int
    longest_streak: int
    total_tasks: int
    high_priority_tasks: int
    completed_at: datetime          # local time in the streak timezone
    priority: str
    tasks_last_hour: int            # includes this completion
    tasks_today: int                # includes this completion


@dataclass(frozen=True)
class Achievement:
    key: str
    name: str
    description: str
    category: str
    rarity: str                     # 'common' | 'rare' | 'epic' | 'legendary'
    condition: Callable[[AchievementSnapshot], bool]
    metric: Optional[str] = None    # snapshot field that drives progress display
    milestone: Optional[int] = None

    @property
    def points(self) -> int:
        return RARITY_POINTS.get(self.rarity, 10)


def _at_least(metric: str, goal: int) -> Callable[[AchievementSnapshot], bool]:
    return lambda s: getattr(s, metric) >= goal


def _milestone(key, name, description, category, rarity, metric, goal) -> Achievement:
    return Achievement(key, name, description, category, rarity, _at_least(metric, goal), metric, goal)


ACHIEVEMENTS: list[Achievement] = [
    # Task Master
    _milestone("first_task",  "First Step",       "Complete your first task", "Task Master", "common",    "total_tasks", 1),
    _milestone("tasks_10",    "Task Initiator",   "Complete 10 tasks",        "Task Master", "common",    "total_tasks", 10),
    _milestone("tasks_50",    "Task Apprentice",  "Complete 50 tasks",        "Task Master", "common",    "total_tasks", 50),
    _milestone("tasks_100",   "Productivity Pro", "Complete 100 tasks",       "Task Master", "rare",      "total_tasks", 100),
    _milestone("tasks_250",   "Task Virtuoso",    "Complete 250 tasks",       "Task Master", "rare",      "total_tasks", 250),
    _milestone("tasks_500",   "Task Champion",    "Complete 500 tasks",       "Task Master", "epic",      "total_tasks", 500),
    _milestone("tasks_1000",  "Task Legend",      "Complete 1000 tasks",      "Task Master", "epic",      "total_tasks", 1000),
    _milestone("tasks_2500",  "Task Overlord",    "Complete 2500 tasks",      "Task Master", "legendary", "total_tasks", 2500),
    _milestone("tasks_5000",  "Task Deity",       "Complete 5000 tasks",      "Task Master", "legendary", "total_tasks", 5000),

    # Streak Keeper
    _milestone("streak_3",   "Streak Starter",       "Maintain a 3-day streak",   "Streak Keeper", "common",    "current_streak", 3),
    _milestone("streak_7",   "Week Warrior",         "Maintain a 7-day streak",   "Streak Keeper", "common",    "current_streak", 7),
    _milestone("streak_14",  "Fortnight Fighter",    "Maintain a 14-day streak",  "Streak Keeper", "rare",      "current_streak", 14),
    _milestone("streak_30",  "Monthly Master",       "Maintain a 30-day streak",  "Streak Keeper", "rare",      "current_streak", 30),
    _milestone("streak_60",  "Consistency Champion", "Maintain a 60-day streak",  "Streak Keeper", "epic",      "current_streak", 60),
    _milestone("streak_100", "Century Champion",     "Maintain a 100-day streak", "Streak Keeper", "epic",      "current_streak", 100),
    _milestone("streak_365", "Year-long Devotee",    "Maintain a full year streak", "Streak Keeper", "legendary", "current_streak", 365),

    # Level Champion
    _milestone("level_5",   "Rising Star",        "Reach level 5",   "Level Champion", "common",    "level", 5),
    _milestone("level_10",  "Dedicated Achiever", "Reach level 10",  "Level Champion", "common",    "level", 10),
    _milestone("level_25",  "Quest Expert",       "Reach level 25",  "Level Champion", "rare",      "level", 25),
    _milestone("level_50",  "Master Quester",     "Reach level 50",  "Level Champion", "epic",      "level", 50),
    _milestone("level_75",  "Elite Adventurer",   "Reach level 75",  "Level Champion", "epic",      "level", 75),
    _milestone("level_100", "Legendary Hero",     "Reach level 100", "Level Champion", "legendary", "level", 100),

    # Speed Demon
    _milestone("speed_3_in_hour",  "Quick Starter",  "Complete 3 tasks in one hour",  "Speed Demon", "common",    "tasks_last_hour", 3),
    _milestone("speed_5_in_hour",  "Speed Demon",    "Complete 5 tasks in one hour",  "Speed Demon", "rare",      "tasks_last_hour", 5),
    _milestone("speed_10_in_hour", "Lightning Fast", "Complete 10 tasks in one hour", "Speed Demon", "epic",      "tasks_last_hour", 10),
    _milestone("speed_15_in_hour", "Task Hurricane", "Complete 15 tasks in one hour", "Speed Demon", "legendary", "tasks_last_hour", 15),

    # Consistency Master
    _milestone("daily_dozen",    "Daily Dozen",    "Complete 12 or more tasks in a single day",          "Consistency Master", "rare", "tasks_today", 12),
    _milestone("weekly_warrior", "Weekly Warrior", "Complete tasks every day for 7 consecutive days",    "Consistency Master", "rare", "current_streak", 7),

    # Time Master
    Achievement("dawn_raider",      "Dawn Raider",      "Complete a task before 6 AM",         "Time Master", "rare",
                lambda s: s.completed_at.hour < 6),
    Achievement("early_bird",       "Early Bird",       "Complete a task before 9 AM",         "Time Master", "common",
                lambda s: s.completed_at.hour < 9),
    Achievement("night_owl",        "Night Owl",        "Complete a task after 9 PM",          "Time Master", "common",
                lambda s: s.completed_at.hour >= 21),
    Achievement("midnight_warrior", "Midnight Warrior", "Complete a task just after midnight", "Time Master", "rare",
                lambda s: s.completed_at.hour == 0),

    # Special dates
    Achievement("new_year_resolution", "New Year Resolution", "Complete a task on January 1st",  "Special Achievements", "rare",
                lambda s: (s.completed_at.month, s.completed_at.day) == (1, 1)),
    Achievement("leap_day_legend",     "Leap Day Legend",     "Complete a task on February 29th", "Special Achievements", "legendary",
                lambda s: (s.completed_at.month, s.completed_at.day) == (2, 29)),

    # Priority Master
    _milestone("priority_perfectionist", "Priority Perfectionist", "Complete 50 high-priority tasks",
               "Priority Master", "rare", "high_priority_tasks", 50),
]

ACHIEVEMENT_BY_KEY: dict[str, Achievement] = {a.key: a for a in ACHIEVEMENTS}


def evaluate_achievements(
    snapshot: AchievementSnapshot,
    unlocked_keys: Iterable[str],
    catalog: Iterable[Achievement] = ACHIEVEMENTS,
) -> list[str]:
    """
    Keys whose condition now holds and that are not unlocked yet, in catalog order.
    A condition that raises is logged and skipped so it cannot block the rest.
    """
    already = set(unlocked_keys)
    newly: list[str] = []
    for achievement in catalog:
        if achievement.key in already:
            continue
        try:
            satisfied = bool(achievement.condition(snapshot))
        except Exception:
            logger.exception("Achievement condition failed: %s", achievement.key)
            continue
        if satisfied:
            newly.append(achievement.key)
            already.add(achievement.key)
    return newly


def achievement_progress(achievement: Achievement, values: dict, unlocked: bool = False) -> Optional[dict]:
    """
    current/target/percent for milestone achievements, None for one-off ones.
    `values` maps metric names to the user's current numbers. An unlocked
    achievement always reads as complete, even if the metric has since dropped.
    """
    if achievement.metric is None or achievement.milestone is None:
        return None
    current = achievement.milestone if unlocked else int(values.get(achievement.metric) or 0)
    return {
        "current": min(current, achievement.milestone),
        "target": achievement.milestone,
        "percent": round(min(current / achievement.milestone, 1.0) * 100, 1),
    }
