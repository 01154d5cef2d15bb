"""Core configuration for proxyguard."""

from __future__ import annotations

import tempfile
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROXYGUARD_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Manifest ─────────────────────────────────────────────────────────
    manifest_dir: str = ".proxyguard"
    dev_tmp_dir: str = Field(default_factory=tempfile.gettempdir)
    lock_timeout_seconds: float = 60.0
    lock_poll_interval: float = 0.05

    # ── Storage checks ───────────────────────────────────────────────────
    strict_renames: bool = False
    unsafe_allow_custom_types: bool = False

    # ── Build info ───────────────────────────────────────────────────────
    build_info_dirs: str = "artifacts/build-info,out/build-info"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
