"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

MS_PER_DAY = 24 * 60 * 60 * 1000


class SupportTriageSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="TRIAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.1
    max_content_chars: int = 3000

    # Classification cache
    cache_days: int = 30
    store_backend: Literal["sqlite", "firestore"] = "sqlite"
    database_path: Path = Path("data/support_triage.db")
    firestore_project: str | None = None

    # Gmail listing
    inbox_query: str = "in:inbox -category:{promotions OR social} -in:sent"
    page_size: int = 10
    check_new_max_results: int = 50

    # Rate limiting & retry
    fetch_batch_size: int = 10
    fetch_delay_seconds: float = 1.0
    fetch_max_retries: int = 3
    fetch_base_delay_seconds: float = 2.0
    analysis_batch_size: int = 5
    refresh_batch_size: int = 20
    refresh_delay_seconds: float = 1.0

    # Request gate
    min_request_interval_seconds: float = 30.0
    max_requests_per_window: int = 5
    request_window_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    @property
    def cache_ttl_ms(self) -> int:
        return self.cache_days * MS_PER_DAY

    def ensure_directories(self) -> None:
        """Create the SQLite data directory if it doesn't exist."""
        if self.store_backend == "sqlite":
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
