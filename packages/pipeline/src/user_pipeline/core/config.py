from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="USER_PIPELINE_",
        env_file=".env",
        extra="ignore",
    )

    # environment state, image index, source checkouts
    state_root: Path = Field(default=Path("state"))
    # one directory per pipeline run: artifacts, events, report, params
    run_root: Path = Field(default=Path("_runs"))

    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    max_workers: int = Field(default=4, ge=1)
    resolve_timeout_s: float | None = Field(default=None, gt=0)
    artifact_timeout_s: float | None = Field(default=None, gt=0)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
