"""Runtime settings, read from the environment (and a .env file when present)."""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_ENV_PREFIX = "TREESYNC_"


class Settings(BaseModel):
    db_path: str = "treesync.db"
    server_url: str | None = None
    device_id: str = "local"

    checkpoint_interval: int = Field(default=50, gt=0)
    history_limit: int = Field(default=500, gt=0)
    conflict_granularity: Literal["field", "node"] = "field"

    # Transport
    max_retries: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=0.5, ge=0)
    request_timeout: float = Field(default=10.0, gt=0)
    max_sync_rounds: int = Field(default=3, ge=1)


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Build Settings from TREESYNC_* environment variables.

    Values in env_file (default: .env in the working directory) are loaded
    first but never override variables already set in the environment.
    """
    load_dotenv(env_file or Path.cwd() / ".env")

    values: dict[str, str] = {}
    for name in Settings.model_fields:
        raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if raw is not None and raw != "":
            values[name] = raw
    return Settings.model_validate(values)
