"""
Vigil — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from vigil/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (reminder transport)
    TELEGRAM_BOT_TOKEN: str

    # Zoom — Server-to-Server OAuth app
    ZOOM_ACCOUNT_ID: str
    ZOOM_CLIENT_ID: str
    ZOOM_CLIENT_SECRET: str
    ZOOM_MEETING_ID: str
    ZOOM_API_BASE_URL: str = "https://api.zoom.us/v2"
    ZOOM_OAUTH_URL: str = "https://zoom.us/oauth/token"

    # Gemini — devotional text (optional; empty key → fallback verses)
    LLM_MODEL: str = ""
    LLM_API_KEY: str = ""

    # SQLite
    DATABASE_PATH: str = "data/vigil.db"

    TIMEZONE: str = "Africa/Harare"

    # Attendance rules
    WINDOW_TOLERANCE_MINUTES: int = 15
    RELEASE_THRESHOLD: int = 5
    SESSION_LOOKBACK_DAYS: int = 7

    # Provider discipline
    LIVE_POLL_MIN_SPACING_SECONDS: float = 2.0
    PROVIDER_TIMEOUT_SECONDS: float = 12.0

    # Reminder queue
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_SEND_INTERVAL_SECONDS: float = 0.5
    DEDUP_TTL_SECONDS: float = 60.0
    DEFAULT_REMINDER_MINUTES: int = 30

    # Timer cadences
    REMINDER_CHECK_SECONDS: int = 60
    LIVE_POLL_SECONDS: int = 180
    SESSION_POLL_SECONDS: int = 1800
    QUEUE_DRAIN_SECONDS: int = 30
    SWEEP_TIME: str = "01:00"
    DEVOTIONAL_TIME: str = "06:00"
    WEEKLY_REPORT_DAY: str = "sunday"
    WEEKLY_REPORT_TIME: str = "08:00"

    @field_validator("LIVE_POLL_MIN_SPACING_SECONDS", mode="after")
    @classmethod
    def spacing_floor(cls, v: float) -> float:
        # Provider throttles bursts below two seconds
        return max(v, 2.0)

    @field_validator("SWEEP_TIME", "DEVOTIONAL_TIME", "WEEKLY_REPORT_TIME", mode="after")
    @classmethod
    def parse_clock(cls, v: str) -> str:
        hour, _, minute = v.strip().partition(":")
        if not (hour.isdigit() and minute.isdigit()):
            raise ValueError(f"Expected HH:MM, got {v!r}")
        if not (0 <= int(hour) <= 23 and 0 <= int(minute) <= 59):
            raise ValueError(f"Hour/minute out of range: {v!r}")
        return f"{int(hour):02d}:{int(minute):02d}"

    @field_validator("WEEKLY_REPORT_DAY", mode="after")
    @classmethod
    def parse_weekday(cls, v: str) -> str:
        day = v.strip().lower()
        if day not in _WEEKDAYS:
            raise ValueError(f"Unknown weekday {v!r}")
        return day

    @property
    def weekly_report_weekday(self) -> int:
        """Monday=0 … Sunday=6, matching date.weekday()."""
        return _WEEKDAYS.index(self.WEEKLY_REPORT_DAY)


_REQUIRED = (
    "TELEGRAM_BOT_TOKEN",
    "ZOOM_ACCOUNT_ID",
    "ZOOM_CLIENT_ID",
    "ZOOM_CLIENT_SECRET",
    "ZOOM_MEETING_ID",
)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    for key in _REQUIRED:
        value = os.getenv(key, "")
        if not value or value.startswith("your-"):
            print(f"ERROR: {key} is missing or not set in .env", file=sys.stderr)
            sys.exit(1)

    overrides = {
        name: os.environ[name]
        for name in Settings.model_fields
        if name in os.environ and name not in _REQUIRED
    }
    return Settings(
        TELEGRAM_BOT_TOKEN=os.environ["TELEGRAM_BOT_TOKEN"],
        ZOOM_ACCOUNT_ID=os.environ["ZOOM_ACCOUNT_ID"],
        ZOOM_CLIENT_ID=os.environ["ZOOM_CLIENT_ID"],
        ZOOM_CLIENT_SECRET=os.environ["ZOOM_CLIENT_SECRET"],
        ZOOM_MEETING_ID=os.environ["ZOOM_MEETING_ID"],
        **overrides,
    )


# Singleton — imported by all other modules as:
#   from vigil.config import settings
settings = _load_settings()
