"""Configuration for the screen-time server, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import click
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_DB_PATH = Path.home() / ".screen-time" / "screen_time.db"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7788
DEFAULT_CORRECT_REWARD_SECONDS = 30
DEFAULT_MILESTONE_REWARD_SECONDS = 120


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise click.ClickException(f"{name} must be an integer, got '{raw}'") from exc


@dataclass
class Settings:
    """Runtime settings. Every field has an environment override."""

    db_path: Path = DEFAULT_DB_PATH
    timezone: Optional[str] = None
    webhook_url: Optional[str] = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    correct_reward_seconds: int = DEFAULT_CORRECT_REWARD_SECONDS
    milestone_reward_seconds: int = DEFAULT_MILESTONE_REWARD_SECONDS
    _tzinfo: Optional[ZoneInfo] = field(default=None, init=False, repr=False)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=Path(os.environ.get("SCREEN_TIME_DB", str(DEFAULT_DB_PATH))).expanduser(),
            timezone=os.environ.get("SCREEN_TIME_TZ") or None,
            webhook_url=os.environ.get("SCREEN_TIME_WEBHOOK_URL") or None,
            host=os.environ.get("SCREEN_TIME_HOST", DEFAULT_HOST),
            port=_env_int("SCREEN_TIME_PORT", DEFAULT_PORT),
            correct_reward_seconds=_env_int(
                "SCREEN_TIME_CORRECT_REWARD", DEFAULT_CORRECT_REWARD_SECONDS
            ),
            milestone_reward_seconds=_env_int(
                "SCREEN_TIME_MILESTONE_REWARD", DEFAULT_MILESTONE_REWARD_SECONDS
            ),
        )

    @property
    def tzinfo(self) -> Optional[ZoneInfo]:
        """Timezone used for calendar-day keys. None means system local time."""
        if self.timezone and self._tzinfo is None:
            self._tzinfo = ZoneInfo(self.timezone)
        return self._tzinfo

    def validate(self) -> None:
        """Validate settings, raising ClickException on bad values."""
        if not 0 < self.port < 65536:
            raise click.ClickException(f"Invalid port {self.port}")
        if self.correct_reward_seconds < 0 or self.milestone_reward_seconds < 0:
            raise click.ClickException("Answer rewards must not be negative")
        if self.timezone:
            try:
                ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise click.ClickException(f"Unknown timezone: {self.timezone}") from exc


def get_settings() -> Settings:
    """Load settings from the environment and validate them."""
    settings = Settings.from_env()
    settings.validate()
    return settings
