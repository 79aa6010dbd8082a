"""Reachline — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Graph API ──
    graph_base_url: str = "https://graph.facebook.com"
    graph_api_version: str = "v24.0"
    graph_request_timeout_s: float = 10.0
    graph_max_retries: int = 3  # 5xx / transport errors only
    graph_max_window_days: int = 30

    # ── Database ──
    database_url: str = ""

    # ── Response cache / coalescer ──
    cache_success_ttl_s: float = 600.0
    cache_rate_limited_ttl_s: float = 120.0
    cache_max_entries: int = 500
    cache_key_salt: str = "reachline-cache"

    # ── Prewarm / repair ──
    prewarm_task_timeout_ms: int = 700
    prewarm_throttle_full_s: int = 60
    prewarm_throttle_thumbs_s: int = 20
    repair_cooldown_s: int = 60
    thumb_lock_stale_minutes: int = 10
    thumb_warm_limit: int = 16
    thumb_warm_concurrency: int = 4
    thumb_warm_timeout_s: float = 5.0
    app_base_url: str = ""

    # ── Backfill / trend ──
    backfill_default_days: int = 90
    backfill_max_days: int = 120
    trend_default_days: int = 7
    trend_max_days: int = 365

    # ── Cron ──
    cron_secret: str = ""
    cron_ig_account_id: str = ""
    ig_access_token: Optional[str] = None  # cron credential mode only
    scheduler_enabled: bool = True
    prewarm_hour: int = 1

    # ── App ──
    log_level: str = "INFO"

    @property
    def graph_base(self) -> str:
        return f"{self.graph_base_url.rstrip('/')}/{self.graph_api_version}"

    @property
    def effective_database_url(self) -> str:
        """Return an async PostgreSQL URL if set, otherwise fall back to SQLite."""
        url = self.database_url
        if url:
            if url.startswith("postgres://"):
                url = "postgresql://" + url[len("postgres://"):]
            if url.startswith("postgresql://"):
                url = "postgresql+asyncpg://" + url[len("postgresql://"):]
            return url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite+aiosqlite:////tmp/reachline.db"
        return "sqlite+aiosqlite:///./reachline.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
