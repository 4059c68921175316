import hashlib
import logging
from datetime import datetime
from functools import lru_cache
from typing import Iterator

from supabase import create_client, Client

from .config import get_settings
from .errors import ConcurrentUpdateError
from .models import DEFAULT_USER_SETTINGS

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000  # Supabase row limit per request
IN_CHUNK = 200    # ids per in_() filter; keeps the request URL short


@lru_cache(maxsize=1)
def get_client() -> Client:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_service_key)


def make_source_key(user_id: str, task_id: str) -> str:
    raw = f"{user_id}:{task_id}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def is_already_processed(db: Client, source_key: str) -> bool:
    """Read-only pre-check; commit_completion is the authoritative dedup."""
    res = db.table("processed_completions").select("source_key").eq("source_key", source_key).limit(1).execute()
    return bool(res.data)


# ── Progress ──────────────────────────────────────────────────────────────────

def get_progress(db: Client, user_id: str) -> dict:
    res = db.table("user_progress").select("*").eq("user_id", user_id).execute()
    return res.data[0] if res.data else {}


def iter_progress(db: Client, min_streak: int = 0) -> Iterator[dict]:
    """All progress rows, paged."""
    offset = 0
    while True:
        res = (
            db.table("user_progress")
            .select("*")
            .gte("current_streak", min_streak)
            .order("user_id")
            .range(offset, offset + PAGE_SIZE - 1)
            .execute()
        )
        batch = res.data or []
        yield from batch
        if len(batch) < PAGE_SIZE:
            return
        offset += PAGE_SIZE


def overwrite_progress(db: Client, user_id: str, updates: dict, expected_version: int) -> None:
    """
    Maintenance-only write, guarded on `version` like commit_completion.
    Raises ConcurrentUpdateError when the row moved since it was read.
    """
    version = expected_version + 1
    res = (
        db.table("user_progress")
        .update({**updates, "version": version})
        .eq("user_id", user_id)
        .eq("version", expected_version)
        .execute()
    )
    if not res.data:
        raise ConcurrentUpdateError(f"progress for {user_id} changed since version {expected_version}")
    logger.info("Progress overwritten for %s (version %d)", user_id, version)


def commit_completion(
    db: Client,
    source_key: str,
    user_id: str,
    expected_version: int,
    progress: dict,
    history: dict,
    unlocks: list[dict],
) -> str:
    """Returns 'ok', 'stale' or 'duplicate'. Runs as one DB transaction."""
    res = db.rpc("commit_completion", {
        "p_source_key": source_key,
        "p_user_id": user_id,
        "p_expected_version": expected_version,
        "p_progress": progress,
        "p_history": history,
        "p_unlocks": unlocks,
    }).execute()
    return res.data


# ── History ───────────────────────────────────────────────────────────────────

def get_history(db: Client, user_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    res = (
        db.table("history")
        .select("id, task_id, task_title, priority, xp_earned, completed_at")
        .eq("user_id", user_id)
        .order("completed_at", desc=True)
        .range(offset, offset + limit - 1)
        .execute()
    )
    return res.data or []


def get_history_between(db: Client, user_id: str, since: datetime, until: datetime) -> list[dict]:
    """Rows with since <= completed_at <= until, oldest first."""
    res = (
        db.table("history")
        .select("task_id, priority, xp_earned, completed_at")
        .eq("user_id", user_id)
        .gte("completed_at", since.isoformat())
        .lte("completed_at", until.isoformat())
        .order("completed_at")
        .execute()
    )
    return res.data or []


def iter_all_history(db: Client, user_id: str) -> Iterator[dict]:
    offset = 0
    while True:
        res = (
            db.table("history")
            .select("task_id, priority, xp_earned, completed_at")
            .eq("user_id", user_id)
            .order("completed_at")
            .range(offset, offset + PAGE_SIZE - 1)
            .execute()
        )
        batch = res.data or []
        yield from batch
        if len(batch) < PAGE_SIZE:
            return
        offset += PAGE_SIZE


# ── Achievements ──────────────────────────────────────────────────────────────

def get_unlocks(db: Client, user_id: str) -> list[dict]:
    res = (
        db.table("achievement_unlocks")
        .select("achievement_key, unlocked_at")
        .eq("user_id", user_id)
        .order("unlocked_at", desc=True)
        .execute()
    )
    return res.data or []


def get_unlocked_keys(db: Client, user_id: str) -> set[str]:
    return {row["achievement_key"] for row in get_unlocks(db, user_id)}


# ── Settings ──────────────────────────────────────────────────────────────────

def get_user_settings(db: Client, user_id: str) -> dict:
    res = db.table("user_settings").select("*").eq("user_id", user_id).execute()
    stored = res.data[0] if res.data else {}
    return {k: stored.get(k, default) for k, default in DEFAULT_USER_SETTINGS.items()}


def upsert_user_settings(db: Client, user_id: str, updates: dict) -> None:
    db.table("user_settings").upsert({"user_id": user_id, **updates}).execute()


def get_settings_for_users(db: Client, user_ids: list[str]) -> dict[str, dict]:
    if not user_ids:
        return {}
    by_user = {}
    for i in range(0, len(user_ids), IN_CHUNK):
        res = db.table("user_settings").select("*").in_("user_id", user_ids[i:i + IN_CHUNK]).execute()
        by_user.update({row["user_id"]: row for row in (res.data or [])})
    return {
        uid: {k: by_user.get(uid, {}).get(k, default) for k, default in DEFAULT_USER_SETTINGS.items()}
        for uid in user_ids
    }


# ── Leaderboard ───────────────────────────────────────────────────────────────

def get_top_progress(db: Client, limit: int, offset: int = 0) -> list[dict]:
    res = (
        db.table("user_progress")
        .select("user_id, lifetime_xp, level, current_streak, longest_streak, last_completion_at")
        .order("lifetime_xp", desc=True)
        .range(offset, offset + limit - 1)
        .execute()
    )
    return res.data or []


# ── Notifications ─────────────────────────────────────────────────────────────

def push_notification(db: Client, row: dict) -> None:
    """Idempotent on (user_id, type, object_id)."""
    db.table("notifications").upsert(
        row, on_conflict="user_id,type,object_id", ignore_duplicates=True
    ).execute()
