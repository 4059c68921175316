from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel, field_validator

from .engine.streak import as_aware
from .engine.xp import PRIORITIES

DEFAULT_TASK_TITLE = "Completed Task"


def caldav_priority(value: int) -> str:
    """Tasks app / CalDAV scale: 1-3 high, 7-9 low, 4-6 and 0 (unset) medium."""
    if 1 <= value <= 3:
        return "high"
    if 7 <= value <= 9:
        return "low"
    return "medium"


def coerce_priority(value: Any) -> str:
    if value is None or value == "":
        return "medium"
    if isinstance(value, bool):
        raise ValueError("priority must be a word or a number 0-9")
    if isinstance(value, int):
        if not 0 <= value <= 9:
            raise ValueError("numeric priority must be between 0 and 9")
        return caldav_priority(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word.isdigit():
            return coerce_priority(int(word))
        if word in PRIORITIES:
            return word
    raise ValueError(f"priority must be one of {PRIORITIES} or a number 0-9")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """DB rows carry ISO strings; anything unparsable becomes None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_aware(value)
    try:
        return as_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


# ── Core records ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CompletionEvent:
    task_id: str
    user_id: str
    task_title: str
    priority: str
    occurred_at: datetime


@dataclass(frozen=True)
class UserProgress:
    user_id: str
    lifetime_xp: int = 0
    level: int = 1
    current_streak: int = 0
    longest_streak: int = 0
    last_completion_at: Optional[datetime] = None
    total_tasks: int = 0
    high_priority_tasks: int = 0
    version: int = 0

    @classmethod
    def from_row(cls, user_id: str, row: dict | None) -> "UserProgress":
        """A missing row is a fresh zero-state record."""
        row = row or {}
        return cls(
            user_id=user_id,
            lifetime_xp=row.get("lifetime_xp") or 0,
            level=row.get("level") or 1,
            current_streak=row.get("current_streak") or 0,
            longest_streak=row.get("longest_streak") or 0,
            last_completion_at=parse_timestamp(row.get("last_completion_at")),
            total_tasks=row.get("total_tasks") or 0,
            high_priority_tasks=row.get("high_priority_tasks") or 0,
            version=row.get("version") or 0,
        )

    def to_row(self) -> dict:
        return {
            "user_id": self.user_id,
            "lifetime_xp": self.lifetime_xp,
            "level": self.level,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_completion_at": self.last_completion_at.isoformat() if self.last_completion_at else None,
            "total_tasks": self.total_tasks,
            "high_priority_tasks": self.high_priority_tasks,
        }

    def evolve(self, **changes) -> "UserProgress":
        return replace(self, **changes)


# ── Inbound completion payloads ───────────────────────────────────────────────
# The host's task hook has reached us in three shapes over time. Each is a
# member of one discriminated union and is normalized by to_completion_event().

class _PayloadBase(BaseModel):
    # CalDAV ids are sometimes numeric
    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}


class TasksAppTask(_PayloadBase):
    id: str = Field(min_length=1, max_length=255)
    uid: str = Field(min_length=1, max_length=64)
    summary: Optional[str] = Field(default=None, max_length=512)
    priority: Optional[int] = Field(default=0, ge=0, le=9)
    completed: Optional[datetime] = None


class TasksAppCompletion(_PayloadBase):
    kind: Literal["tasks_app"]
    task: TasksAppTask


class DirectCompletion(_PayloadBase):
    kind: Literal["direct"]
    task_id: str = Field(min_length=1, max_length=255)
    user_id: str = Field(min_length=1, max_length=64)
    task_title: Optional[str] = Field(default=None, max_length=512)
    priority: str = "medium"
    occurred_at: Optional[datetime] = None

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v):
        return coerce_priority(v)


class DataFields(_PayloadBase):
    taskId: str = Field(min_length=1, max_length=255)
    userId: str = Field(min_length=1, max_length=64)
    taskTitle: Optional[str] = Field(default=None, max_length=512)
    priority: str = "medium"

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v):
        return coerce_priority(v)


class DataCompletion(_PayloadBase):
    kind: Literal["data"]
    data: DataFields


CompletionPayload = Annotated[
    Union[TasksAppCompletion, DirectCompletion, DataCompletion],
    Field(discriminator="kind"),
]


class CompletionRequest(RootModel[CompletionPayload]):
    pass


def to_completion_event(payload, received_at: Optional[datetime] = None) -> CompletionEvent:
    received_at = as_aware(received_at or datetime.now(timezone.utc))

    if isinstance(payload, TasksAppCompletion):
        task = payload.task
        return CompletionEvent(
            task_id=task.id,
            user_id=task.uid,
            task_title=task.summary or DEFAULT_TASK_TITLE,
            priority=caldav_priority(task.priority or 0),
            occurred_at=as_aware(task.completed) if task.completed else received_at,
        )
    if isinstance(payload, DirectCompletion):
        return CompletionEvent(
            task_id=payload.task_id,
            user_id=payload.user_id,
            task_title=payload.task_title or DEFAULT_TASK_TITLE,
            priority=payload.priority,
            occurred_at=as_aware(payload.occurred_at) if payload.occurred_at else received_at,
        )
    if isinstance(payload, DataCompletion):
        data = payload.data
        return CompletionEvent(
            task_id=data.taskId,
            user_id=data.userId,
            task_title=data.taskTitle or DEFAULT_TASK_TITLE,
            priority=data.priority,
            occurred_at=received_at,
        )
    raise TypeError(f"unsupported completion payload: {type(payload).__name__}")


# ── Settings ──────────────────────────────────────────────────────────────────

DEFAULT_USER_SETTINGS = {
    "notify_achievements": True,
    "notify_level_up": True,
    "notify_streak_reminder": True,
    "notify_daily_summary": False,
    "show_on_leaderboard": True,
}


class SettingsPatch(BaseModel):
    notify_achievements: Optional[bool] = None
    notify_level_up: Optional[bool] = None
    notify_streak_reminder: Optional[bool] = None
    notify_daily_summary: Optional[bool] = None
    show_on_leaderboard: Optional[bool] = None
    model_config = {"extra": "forbid"}
