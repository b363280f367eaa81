from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    return Path.home() / ".config" / "belfry"


def _default_artifact_root() -> Path:
    return Path.home() / "Belfry" / "compositions"


class Settings(BaseSettings):
    """Runtime configuration for the Belfry worker process."""

    model_config = SettingsConfigDict(
        env_prefix="BELFRY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    config_dir: Path = Field(default_factory=_default_config_dir)
    artifact_root: Path = Field(default_factory=_default_artifact_root)
    default_num_comps: int = Field(
        default=30,
        ge=1,
        le=10_000,
        description="Number of compositions kept when a request does not say.",
    )
    default_thread_count: int | None = Field(
        default=None,
        ge=1,
        le=256,
        description="Search worker threads (None uses the CPU count).",
    )
    graph_size_limit: int = Field(
        default=100_000,
        ge=1,
        description="Largest number of chunks a layout may explore before giving up.",
    )
    default_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Cancel searches after this many seconds unless the request overrides it.",
    )
    progress_interval: int = Field(
        default=10_000,
        ge=1,
        description="Node expansions between progress reports from each worker.",
    )
    write_artifacts: bool = Field(
        default=True,
        description="Write each search result as JSON under the artifact root.",
    )

    @model_validator(mode="after")
    def _resolve_thread_count(self) -> "Settings":
        if self.default_thread_count is None:
            self.default_thread_count = os.cpu_count() or 1
        return self

    def ensure_directories(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.artifact_root.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
