"""Configuration management"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from .engine.streak import StreakPolicy

load_dotenv()

DEFAULT_ORIGINS = "http://localhost:3000,http://localhost:8080"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    supabase_url: str = ""
    supabase_service_key: str = ""
    api_token: str = ""
    timezone: str = "UTC"
    streak_grace_hours: int = 48
    streak_day_boundary: str = "calendar"
    streak_max_day_gap: int = 1
    reminder_lead_hours: int = 4
    enable_scheduler: bool = False
    log_level: str = "INFO"
    allowed_origins: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY", ""),
            api_token=os.getenv("QUEST_API_TOKEN", ""),
            timezone=os.getenv("QUEST_TIMEZONE", "UTC"),
            streak_grace_hours=int(os.getenv("QUEST_STREAK_GRACE_HOURS", "48")),
            streak_day_boundary=os.getenv("QUEST_STREAK_DAY_BOUNDARY", "calendar"),
            streak_max_day_gap=int(os.getenv("QUEST_STREAK_MAX_DAY_GAP", "1")),
            reminder_lead_hours=int(os.getenv("QUEST_REMINDER_LEAD_HOURS", "4")),
            enable_scheduler=_env_bool("QUEST_ENABLE_SCHEDULER", "false"),
            log_level=os.getenv("QUEST_LOG_LEVEL", "INFO").upper(),
            allowed_origins=[
                o.strip() for o in os.getenv("QUEST_ALLOWED_ORIGINS", DEFAULT_ORIGINS).split(",") if o.strip()
            ],
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(hours=self.reminder_lead_hours)

    def streak_policy(self) -> StreakPolicy:
        return StreakPolicy(
            grace_period=timedelta(hours=self.streak_grace_hours),
            day_boundary=self.streak_day_boundary,
            tz=self.tz,
            max_day_gap=self.streak_max_day_gap,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
