"""
Health Reminder Bot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from healthbot/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Web Push (provider disabled while the keys are empty)
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_SUBJECT: str = "mailto:admin@example.com"

    # SQLite
    DATABASE_PATH: str = "data/health.db"

    # Security: also the fixed set of users the scheduler serves
    ALLOWED_USER_IDS: list[int] = []

    # Local day boundary for "today" checks and preferred reminder hours
    TIMEZONE: str = "Europe/Berlin"

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: int = 60
    PROVIDER_TIMEOUT_SECONDS: int = 10

    # Medication inventory
    LOW_STOCK_DAYS: int = 7
    LOW_STOCK_HOUR: int = 11

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "SCHEDULER_INTERVAL_SECONDS",
        "PROVIDER_TIMEOUT_SECONDS",
        "LOW_STOCK_DAYS",
        "LOW_STOCK_HOUR",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @property
    def web_push_enabled(self) -> bool:
        return bool(self.VAPID_PUBLIC_KEY and self.VAPID_PRIVATE_KEY)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        VAPID_PUBLIC_KEY=os.getenv("VAPID_PUBLIC_KEY", ""),
        VAPID_PRIVATE_KEY=os.getenv("VAPID_PRIVATE_KEY", ""),
        VAPID_SUBJECT=os.getenv("VAPID_SUBJECT", "mailto:admin@example.com"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/health.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Berlin"),
        SCHEDULER_INTERVAL_SECONDS=os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"),
        PROVIDER_TIMEOUT_SECONDS=os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"),
        LOW_STOCK_DAYS=os.getenv("LOW_STOCK_DAYS", "7"),
        LOW_STOCK_HOUR=os.getenv("LOW_STOCK_HOUR", "11"),
    )


# Singleton, imported by all other modules as:
#   from healthbot.config import settings
settings = _load_settings()
