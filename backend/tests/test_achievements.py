from dataclasses import replace
from datetime import datetime

from quest.engine.achievements import (
    ACHIEVEMENTS, ACHIEVEMENT_BY_KEY, Achievement, AchievementSnapshot,
    achievement_progress, evaluate_achievements,
)


def make_snapshot(**overrides) -> AchievementSnapshot:
    base = AchievementSnapshot(
        lifetime_xp=10,
        level=1,
        current_streak=1,
        longest_streak=1,
        total_tasks=1,
        high_priority_tasks=0,
        completed_at=datetime(2026, 3, 2, 14, 0),
        priority="medium",
        tasks_last_hour=1,
        tasks_today=1,
    )
    return replace(base, **overrides)


class TestCatalog:
    def test_keys_unique(self):
        keys = [a.key for a in ACHIEVEMENTS]
        assert len(keys) == len(set(keys))
        assert set(keys) == set(ACHIEVEMENT_BY_KEY)

    def test_rarity_points(self):
        assert ACHIEVEMENT_BY_KEY["first_task"].points == 10
        assert ACHIEVEMENT_BY_KEY["tasks_100"].points == 25
        assert ACHIEVEMENT_BY_KEY["tasks_500"].points == 50
        assert ACHIEVEMENT_BY_KEY["tasks_5000"].points == 100


class TestEvaluate:
    def test_first_task(self):
        assert evaluate_achievements(make_snapshot(), set()) == ["first_task"]

    def test_idempotent(self):
        snap = make_snapshot(total_tasks=10, current_streak=3, level=5)
        first = evaluate_achievements(snap, set())
        assert first
        assert evaluate_achievements(snap, set(first)) == []

    def test_catalog_order(self):
        snap = make_snapshot(total_tasks=50, current_streak=7, longest_streak=7)
        keys = evaluate_achievements(snap, set())
        assert keys == [
            "first_task", "tasks_10", "tasks_50",
            "streak_3", "streak_7",
            "weekly_warrior",
        ]

    def test_already_unlocked_skipped(self):
        snap = make_snapshot(total_tasks=10)
        assert evaluate_achievements(snap, {"first_task"}) == ["tasks_10"]

    def test_time_of_day(self):
        assert "dawn_raider" in evaluate_achievements(make_snapshot(completed_at=datetime(2026, 3, 2, 5, 30)), set())
        assert "early_bird" in evaluate_achievements(make_snapshot(completed_at=datetime(2026, 3, 2, 8, 59)), set())
        assert "night_owl" in evaluate_achievements(make_snapshot(completed_at=datetime(2026, 3, 2, 21, 0)), set())
        midnight = evaluate_achievements(make_snapshot(completed_at=datetime(2026, 3, 2, 0, 10)), set())
        assert "midnight_warrior" in midnight
        assert "dawn_raider" in midnight

    def test_special_dates(self):
        assert "new_year_resolution" in evaluate_achievements(
            make_snapshot(completed_at=datetime(2027, 1, 1, 12, 0)), set())
        assert "leap_day_legend" in evaluate_achievements(
            make_snapshot(completed_at=datetime(2028, 2, 29, 12, 0)), set())

    def test_speed_and_daily(self):
        keys = evaluate_achievements(make_snapshot(tasks_last_hour=5, tasks_today=12), set())
        assert "speed_3_in_hour" in keys
        assert "speed_5_in_hour" in keys
        assert "speed_10_in_hour" not in keys
        assert "daily_dozen" in keys

    def test_priority_perfectionist(self):
        assert "priority_perfectionist" in evaluate_achievements(make_snapshot(high_priority_tasks=50), set())
        assert "priority_perfectionist" not in evaluate_achievements(make_snapshot(high_priority_tasks=49), set())

    def test_failing_condition_is_skipped(self):
        def boom(s):
            raise RuntimeError("bad predicate")

        catalog = [
            Achievement("broken", "Broken", "", "Test", "common", boom),
            ACHIEVEMENT_BY_KEY["first_task"],
        ]
        assert evaluate_achievements(make_snapshot(), set(), catalog) == ["first_task"]


class TestProgress:
    def test_milestone_progress(self):
        p = achievement_progress(ACHIEVEMENT_BY_KEY["tasks_100"], {"total_tasks": 25})
        assert p == {"current": 25, "target": 100, "percent": 25.0}

    def test_progress_capped(self):
        p = achievement_progress(ACHIEVEMENT_BY_KEY["streak_3"], {"current_streak": 9})
        assert p["current"] == 3
        assert p["percent"] == 100.0

    def test_one_off_has_no_progress(self):
        assert achievement_progress(ACHIEVEMENT_BY_KEY["night_owl"], {}) is None

    def test_unlocked_reads_complete_after_metric_drops(self):
        a = ACHIEVEMENT_BY_KEY["speed_3_in_hour"]
        assert achievement_progress(a, {}) == {"current": 0, "target": 3, "percent": 0.0}
        assert achievement_progress(a, {}, unlocked=True) == {"current": 3, "target": 3, "percent": 100.0}
        p = achievement_progress(ACHIEVEMENT_BY_KEY["streak_7"], {"current_streak": 0}, unlocked=True)
        assert p["percent"] == 100.0
