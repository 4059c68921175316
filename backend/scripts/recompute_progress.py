"""
Recompute a user's progress row from their completion history.

Rebuilds lifetime XP, level, task counters and streak counters from scratch so
they match what the completion pipeline would have produced. Safe to run
multiple times (idempotent).

Usage:
    cd backend
    SUPABASE_URL=... SUPABASE_SERVICE_KEY=... python scripts/recompute_progress.py <user_id>

Or with a .env file:
    python scripts/recompute_progress.py <user_id> [--dry-run]
"""
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add project root to path so we can import the quest package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from quest.config import get_settings
from quest.db import get_client, get_progress, iter_all_history, overwrite_progress
from quest.engine.streak import DEFAULT_POLICY, StreakPolicy, advance_streak
from quest.engine.xp import DEFAULT_TABLE, ProgressionTable, calculate_level
from quest.errors import ConcurrentUpdateError
from quest.models import parse_timestamp

MAX_ATTEMPTS = 3

FIELDS = ["lifetime_xp", "level", "current_streak", "longest_streak",
          "last_completion_at", "total_tasks", "high_priority_tasks"]


def replay_history(
    history: list[dict],
    policy: StreakPolicy = DEFAULT_POLICY,
    table: ProgressionTable = DEFAULT_TABLE,
) -> dict:
    """
    Fold history rows (oldest first) into progress values.
    XP is the sum of what was awarded; it is not re-derived.
    """
    lifetime_xp = 0
    high = 0
    current = longest = 0
    last = None
    counted = 0

    for row in history:
        completed_at = parse_timestamp(row.get("completed_at"))
        if completed_at is None:
            continue
        counted += 1
        lifetime_xp += row.get("xp_earned") or 0
        if row.get("priority") == "high":
            high += 1
        update = advance_streak(current, longest, last, completed_at, policy)
        current, longest, last = update.current_streak, update.longest_streak, update.last_completion_at

    return {
        "lifetime_xp": lifetime_xp,
        "level": calculate_level(lifetime_xp, table),
        "current_streak": current,
        "longest_streak": longest,
        "last_completion_at": last.isoformat() if last else None,
        "total_tasks": counted,
        "high_priority_tasks": high,
    }


def recompute(db, user_id: str, policy: StreakPolicy = DEFAULT_POLICY, dry_run: bool = False) -> bool:
    """
    One read-replay-write pass. The version is read before the history so a
    completion landing mid-replay makes the guarded write fail.
    Returns False when there was nothing to write.
    """
    current = get_progress(db, user_id)
    if not current:
        print(f"❌ No progress row for: {user_id}")
        sys.exit(1)
    expected_version = current.get("version") or 0

    print("  Current progress:")
    for k in FIELDS:
        print(f"    {k}: {current.get(k)}")

    print("\n  Fetching history...")
    history = list(iter_all_history(db, user_id))
    if not history:
        print("  No history found — nothing to recompute.")
        return False

    new_progress = replay_history(history, policy)

    print(f"\n  Computed progress (from {len(history)} completions):")
    for k, v in new_progress.items():
        was = current.get(k)
        same = v == was or (k == "last_completion_at" and parse_timestamp(v) == parse_timestamp(was))
        marker = " ✅" if same else f" 📈 (was {was})"
        print(f"    {k}: {v}{marker}")

    if dry_run:
        print("\n  DRY RUN — no changes written.")
        return False

    overwrite_progress(db, user_id, new_progress, expected_version)
    return True


def run(user_id: str, dry_run: bool = False):
    print(f"\n🔍 Recomputing progress for user: {user_id}\n")

    db = get_client()
    policy = get_settings().streak_policy()
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            if recompute(db, user_id, policy, dry_run):
                print(f"\n✅ Progress updated for {user_id}!\n")
            return
        except ConcurrentUpdateError:
            print(f"\n⚠️  Progress changed during recompute (attempt {attempt}/{MAX_ATTEMPTS}), retrying...\n")

    print(f"❌ Gave up after {MAX_ATTEMPTS} attempts: {user_id} keeps receiving completions.")
    sys.exit(1)


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if a != "--dry-run"]
    dry = "--dry-run" in sys.argv

    if not args:
        print("Usage: python scripts/recompute_progress.py <user_id> [--dry-run]")
        sys.exit(1)

    run(args[0], dry_run=dry)

