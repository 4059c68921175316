"""
Quest: FastAPI backend
"""
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Header, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .completion import history_window, process_completion
from .config import get_settings
from .db import (
    get_client, get_progress, get_history, get_history_between, get_unlocks,
    get_user_settings, upsert_user_settings, get_settings_for_users, get_top_progress,
)
from .engine.achievements import ACHIEVEMENTS, ACHIEVEMENT_BY_KEY, achievement_progress
from .engine.streak import StreakPolicy, effective_streak, grace_deadline, streak_state, StreakState
from .engine.xp import get_rank_title, level_snapshot
from .errors import InvalidInputError, PersistenceError
from .jobs import build_scheduler
from .models import CompletionRequest, SettingsPatch, UserProgress, parse_timestamp, to_completion_event

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO),
                    format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

LEADERBOARD_PAGE = 50


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.enable_scheduler:
        scheduler = build_scheduler(settings)
        scheduler.start()
        logger.info("Scheduler started (tz=%s)", settings.timezone)
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="Quest API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(InvalidInputError)
def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Could not save progress, please retry", "retry": True},
        headers={"Retry-After": "1"},
    )


@app.get("/health")
def health():
    try:
        db = get_client()
        db.table("user_progress").select("user_id").limit(1).execute()
        return {"status": "ok", "db": "ok"}
    except Exception as e:
        logger.error("Health check DB failure: %s", e)
        raise HTTPException(status_code=503, detail="DB unavailable")


# ── Auth ──────────────────────────────────────────────────────────────────────

def get_bearer_token(authorization: str = Header(...)) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    return authorization.removeprefix("Bearer ").strip()


def require_token(token: str = Depends(get_bearer_token)) -> str:
    expected = get_settings().api_token
    if not expected:
        logger.error("QUEST_API_TOKEN is not configured; rejecting write")
        raise HTTPException(status_code=503, detail="API token not configured")
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid token")
    return token


# ── Ingest completions ────────────────────────────────────────────────────────

@app.post("/api/completions", status_code=200)
@limiter.limit("60/minute")
def ingest_completion(request: Request, body: CompletionRequest, _: str = Depends(require_token)):
    event = to_completion_event(body.root)
    result = process_completion(get_client(), event, get_settings().streak_policy())
    return result.to_dict()


# ── Stats ─────────────────────────────────────────────────────────────────────

@app.get("/api/stats/{user_id}")
@limiter.limit("30/minute")
def get_stats(request: Request, user_id: str):
    db = get_client()
    progress = UserProgress.from_row(user_id, get_progress(db, user_id))
    unlocks = get_unlocks(db, user_id)
    unlocked = [ACHIEVEMENT_BY_KEY[u["achievement_key"]] for u in unlocks if u["achievement_key"] in ACHIEVEMENT_BY_KEY]

    return {
        "user_id": user_id,
        **level_snapshot(progress.lifetime_xp),
        **_streak_view(progress, datetime.now(timezone.utc), get_settings().streak_policy()),
        "total_tasks": progress.total_tasks,
        "high_priority_tasks": progress.high_priority_tasks,
        "achievements_unlocked": len(unlocked),
        "achievements_total": len(ACHIEVEMENTS),
        "achievement_points": sum(a.points for a in unlocked),
    }


@app.get("/api/streak/{user_id}")
def get_streak(user_id: str):
    db = get_client()
    progress = UserProgress.from_row(user_id, get_progress(db, user_id))
    return _streak_view(progress, datetime.now(timezone.utc), get_settings().streak_policy())


# ── Achievements ──────────────────────────────────────────────────────────────

@app.get("/api/achievements/{user_id}")
def get_achievements(user_id: str):
    db = get_client()
    progress = UserProgress.from_row(user_id, get_progress(db, user_id))
    unlocked_at = {u["achievement_key"]: u["unlocked_at"] for u in get_unlocks(db, user_id)}
    policy = get_settings().streak_policy()
    now = datetime.now(timezone.utc)
    since, _ = history_window(now, policy)
    recent = [parse_timestamp(r.get("completed_at")) for r in get_history_between(db, user_id, since, now)]
    recent = [t for t in recent if t is not None]
    values = {
        "total_tasks": progress.total_tasks,
        "current_streak": effective_streak(progress.current_streak, progress.last_completion_at, now, policy),
        "level": progress.level,
        "high_priority_tasks": progress.high_priority_tasks,
        "tasks_last_hour": sum(1 for t in recent if t > now - timedelta(hours=1)),
        "tasks_today": sum(1 for t in recent if policy.local_date(t) == policy.local_date(now)),
    }

    items = []
    for a in ACHIEVEMENTS:
        items.append({
            "key": a.key,
            "name": a.name,
            "description": a.description,
            "category": a.category,
            "rarity": a.rarity,
            "points": a.points,
            "unlocked": a.key in unlocked_at,
            "unlocked_at": unlocked_at.get(a.key),
            "progress": achievement_progress(a, values, unlocked=a.key in unlocked_at),
        })

    unlocked_count = sum(1 for i in items if i["unlocked"])
    return {
        "achievements": items,
        "total": len(items),
        "unlocked": unlocked_count,
        "percent": round(unlocked_count / len(items) * 100, 1) if items else 0.0,
        "points": sum(i["points"] for i in items if i["unlocked"]),
    }


@app.get("/api/achievements/{user_id}/recent")
def get_recent_achievements(user_id: str, limit: int = Query(5, ge=1, le=50)):
    db = get_client()
    recent = []
    for row in get_unlocks(db, user_id):
        a = ACHIEVEMENT_BY_KEY.get(row["achievement_key"])
        if a is None:
            continue
        recent.append({
            "key": a.key,
            "name": a.name,
            "description": a.description,
            "rarity": a.rarity,
            "unlocked_at": row["unlocked_at"],
        })
        if len(recent) >= limit:
            break
    return {"achievements": recent}


# ── History ───────────────────────────────────────────────────────────────────

@app.get("/api/history/{user_id}")
def get_user_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    rows = get_history(get_client(), user_id, limit=limit, offset=offset)
    return {
        "history": rows,
        "xp_total": sum(r.get("xp_earned") or 0 for r in rows),
        "limit": limit,
        "offset": offset,
    }


# ── Leaderboard ───────────────────────────────────────────────────────────────

@app.get("/api/leaderboard")
def get_leaderboard(limit: int = Query(20, ge=1, le=100)):
    """Top users by lifetime XP. Respects show_on_leaderboard opt-out."""
    db = get_client()
    page_size = max(limit, LEADERBOARD_PAGE)

    # page until enough users who did not opt out are collected
    visible = []
    offset = 0
    while len(visible) < limit:
        rows = get_top_progress(db, page_size, offset)
        prefs = get_settings_for_users(db, [r["user_id"] for r in rows])
        visible.extend(r for r in rows if prefs.get(r["user_id"], {}).get("show_on_leaderboard", True))
        if len(rows) < page_size:
            break
        offset += page_size

    policy = get_settings().streak_policy()
    now = datetime.now(timezone.utc)
    result = []
    for row in visible[:limit]:
        progress = UserProgress.from_row(row["user_id"], row)
        result.append({
            "rank": len(result) + 1,
            "user_id": progress.user_id,
            "lifetime_xp": progress.lifetime_xp,
            "level": progress.level,
            "rank_title": get_rank_title(progress.level),
            "current_streak": effective_streak(progress.current_streak, progress.last_completion_at, now, policy),
        })

    return {"leaderboard": result}


# ── Settings ──────────────────────────────────────────────────────────────────

@app.get("/api/settings/{user_id}")
def read_settings(user_id: str):
    return get_user_settings(get_client(), user_id)


@app.put("/api/settings/{user_id}")
def update_settings(user_id: str, body: SettingsPatch, _: str = Depends(require_token)):
    db = get_client()
    updates = body.model_dump(exclude_none=True)
    if updates:
        upsert_user_settings(db, user_id, updates)
        logger.info("Settings updated for %s: %s", user_id, sorted(updates))
    return get_user_settings(db, user_id)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _streak_view(progress: UserProgress, now: datetime, policy: StreakPolicy) -> dict:
    last = progress.last_completion_at
    state = streak_state(progress.current_streak, last, now, policy)
    return {
        "current_streak": effective_streak(progress.current_streak, last, now, policy),
        "longest_streak": progress.longest_streak,
        "streak_state": state.value,
        "last_completion_at": last.isoformat() if last else None,
        "grace_deadline": grace_deadline(last, policy).isoformat() if state is StreakState.ACTIVE else None,
        "is_active_today": bool(last) and policy.local_date(last) == policy.local_date(now),
    }
