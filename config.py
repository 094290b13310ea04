"""Configuration load/save for mdtasks."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_PATH = Path.home() / ".config" / "mdtasks" / "config.json"

# Environment overrides
CONFIG_ENV = "MDTASKS_CONFIG"
COLLECTION_ENV = "MDTASKS_PATH"


def get_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV, "").strip()
    return Path(override) if override else CONFIG_PATH


class AppConfig(BaseModel):
    """Persisted application configuration."""

    collection_path: str | None = Field(default=None, description="Default task collection folder; None = current directory")
    language: str = Field(default="en", description="Language for natural-language task parsing")
    user_timezone: str = Field(default="UTC", description="IANA timezone for relative dates (e.g. America/New_York). Used for 'today'/'tomorrow'.")
    web_ui_port: int = Field(default=8081, ge=1, le=65535, description="Port for the HTTP API")
    default_list_limit: int = Field(default=50, ge=1, description="Default number of tasks returned by list")
    debug: bool = Field(default=False, description="Log every API request")

    def to_save_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls) -> "AppConfig":
        path = get_config_path()
        if not path.exists():
            return cls()
        raw = json.loads(path.read_text())
        return cls.model_validate(raw)

    def save(self) -> None:
        path = get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_save_dict(), indent=2) + "\n")


def load() -> AppConfig:
    """Load config from disk. Convenience alias for AppConfig.load()."""
    return AppConfig.load()


def set_value(key: str, value: str | None) -> AppConfig:
    """Set one config key from a string value (CLI/API), validate, and persist."""
    config = load()
    if key not in AppConfig.model_fields:
        raise ValueError(f"Unknown config key {key!r}. Known keys: {', '.join(sorted(AppConfig.model_fields))}")
    data = config.model_dump()
    data[key] = value
    updated = AppConfig.model_validate(data)
    updated.save()
    return updated


def resolve_collection_path(flag_path: str | None = None) -> Path:
    """Collection folder: explicit flag, then MDTASKS_PATH, then config, then the current directory."""
    if flag_path:
        return Path(flag_path).expanduser().resolve()
    env_path = os.environ.get(COLLECTION_ENV, "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve()
    config = load()
    if config.collection_path:
        return Path(config.collection_path).expanduser().resolve()
    return Path.cwd()
