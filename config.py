"""Configuration load/save for cadence."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_PATH = Path(__file__).resolve().parent / "config.json"


class AppConfig(BaseModel):
    """Persisted application configuration."""

    debug: bool = Field(default=False, description="Log every API request at WARNING level")
    database_path: str = Field(default="", description="Path to SQLite database file; empty = project dir / cadence.db")
    generation_horizon_days: int = Field(
        default=90, ge=1, le=3650,
        description="How many days ahead recurring task instances are materialized",
    )
    user_timezone: str = Field(default="UTC", description="IANA timezone for relative dates (e.g. America/New_York). Used for 'today'/'tomorrow'.")
    web_ui_port: int = Field(default=8081, ge=1, le=65535, description="Port for the HTTP API")

    def to_save_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls) -> "AppConfig":
        if not CONFIG_PATH.exists():
            return cls()
        raw = json.loads(CONFIG_PATH.read_text())
        return cls.model_validate(raw)

    def save(self) -> None:
        CONFIG_PATH.write_text(json.dumps(self.to_save_dict(), indent=2))


def load() -> AppConfig:
    """Load config from disk. Convenience alias for AppConfig.load()."""
    return AppConfig.load()
