"""
XP and level rules: pure functions, no DB access.
"""
import math
from dataclasses import dataclass
from fractions import Fraction

from ..errors import InvalidInputError

PRIORITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class ProgressionTable:
    base_xp: int = 10
    # (priority, bonus) pairs; a tuple keeps the table hashable
    priority_bonus: tuple[tuple[str, int], ...] = (("low", 0), ("medium", 5), ("high", 10))
    streak_step: Fraction = Fraction(1, 10)     # multiplier gained per streak day
    max_multiplier: Fraction = Fraction(2)
    first_level_xp: int = 100       # XP needed to go from level 1 to 2
    level_growth: Fraction = Fraction(3, 2)     # each level span is this much bigger than the last
    # (min_level, title), ascending
    rank_titles: tuple[tuple[int, str], ...] = (
        (1,   "Task Novice"),
        (3,   "Task Initiate"),
        (5,   "Rising Star"),
        (10,  "Quest Apprentice"),
        (15,  "Achievement Hunter"),
        (20,  "Task Commander"),
        (25,  "Productivity Knight"),
        (30,  "Veteran Adventurer"),
        (40,  "Expert Quester"),
        (50,  "Master Achiever"),
        (75,  "Epic Champion"),
        (100, "Legendary Quest Master"),
    )

    def bonus_for(self, priority: str) -> int:
        for name, bonus in self.priority_bonus:
            if name == priority:
                return bonus
        raise InvalidInputError(f"unknown priority: {priority!r}")

    def level_span(self, level: int) -> int:
        """XP needed to climb from `level` to `level + 1`."""
        return math.floor(self.first_level_xp * self.level_growth ** (level - 1))


DEFAULT_TABLE = ProgressionTable()


def normalize_priority(priority: str) -> str:
    if not isinstance(priority, str) or priority.strip().lower() not in PRIORITIES:
        raise InvalidInputError(f"priority must be one of {PRIORITIES}, got {priority!r}")
    return priority.strip().lower()


def _require_non_negative(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInputError(f"{name} must be a non-negative integer, got {value!r}")


def _require_level(level: int) -> None:
    if isinstance(level, bool) or not isinstance(level, int) or level < 1:
        raise InvalidInputError(f"level must be an integer >= 1, got {level!r}")


def streak_multiplier(streak_length: int, table: ProgressionTable = DEFAULT_TABLE) -> Fraction:
    """1 + step * streak, capped. Exact, so floor() below never sees 21.999..."""
    _require_non_negative("streak_length", streak_length)
    raw = 1 + table.streak_step * streak_length
    return min(raw, table.max_multiplier)


def calculate_xp(priority: str, streak_length: int, table: ProgressionTable = DEFAULT_TABLE) -> int:
    """floor((base + priority bonus) * min(1 + 0.1 * streak, 2.0))"""
    bonus = table.bonus_for(normalize_priority(priority))
    multiplier = streak_multiplier(streak_length, table)
    return math.floor((table.base_xp + bonus) * multiplier)


def get_xp_for_level(level: int, table: ProgressionTable = DEFAULT_TABLE) -> int:
    """Cumulative XP needed to reach this level. T(1) = 0."""
    _require_level(level)
    return sum(table.level_span(i) for i in range(1, level))


def get_xp_for_next_level(level: int, table: ProgressionTable = DEFAULT_TABLE) -> int:
    _require_level(level)
    return get_xp_for_level(level + 1, table)


def calculate_level(lifetime_xp: int, table: ProgressionTable = DEFAULT_TABLE) -> int:
    """Largest level whose cumulative threshold is <= lifetime_xp."""
    _require_non_negative("lifetime_xp", lifetime_xp)
    level = 1
    threshold = 0
    while True:
        threshold += table.level_span(level)
        if threshold > lifetime_xp:
            return level
        level += 1


def get_rank_title(level: int, table: ProgressionTable = DEFAULT_TABLE) -> str:
    _require_level(level)
    title = table.rank_titles[0][1]
    for min_level, name in table.rank_titles:
        if level >= min_level:
            title = name
    return title


def get_progress_to_next_level(level: int, current_xp: int, table: ProgressionTable = DEFAULT_TABLE) -> float:
    """
    Percent (0-100) of the way through `level`.
    `current_xp` is XP earned inside the level, i.e. lifetime_xp - T(level).
    """
    _require_level(level)
    _require_non_negative("current_xp", current_xp)
    span = table.level_span(level)
    if span <= 0:
        return 0.0
    pct = current_xp / span * 100
    return round(max(0.0, min(pct, 100.0)), 2)


def level_snapshot(lifetime_xp: int, table: ProgressionTable = DEFAULT_TABLE) -> dict:
    """Everything the dashboard shows about a user's level."""
    level = calculate_level(lifetime_xp, table)
    floor_xp = get_xp_for_level(level, table)
    xp_in_level = lifetime_xp - floor_xp
    return {
        "level": level,
        "rank_title": get_rank_title(level, table),
        "lifetime_xp": lifetime_xp,
        "xp_in_level": xp_in_level,
        "xp_to_next_level": table.level_span(level),
        "next_level_xp": get_xp_for_next_level(level, table),
        "progress_percent": get_progress_to_next_level(level, xp_in_level, table),
    }
