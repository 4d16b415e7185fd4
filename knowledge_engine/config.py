"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _under_pytest() -> bool:
    """Tests must never pick up a developer's .env or exported keys."""
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


class Settings(BaseSettings):
    """Knowledge engine configuration. All values come from environment variables."""

    # Providers
    openai_api_key: str = Field(default="")
    anthropic_api_key: str = Field(default="")

    # Embeddings
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: int = Field(default=1536)
    embedding_max_chars: int = Field(default=8000)
    embedding_cache_max_size: int = Field(default=1000)

    # Knowledge extraction
    extraction_enabled: bool = Field(default=True)
    extraction_model: str = Field(default="claude-haiku-4-5-20251001")
    extraction_temperature: float = Field(default=0.3)
    extraction_max_tokens: int = Field(default=500)

    # Budget (per owner unless noted; a window limit of 0 disables that window)
    monthly_budget_usd: float = Field(default=100.0)
    hourly_budget_usd: float = Field(default=10.0)
    daily_budget_usd: float = Field(default=25.0)
    daily_total_budget_usd: float = Field(default=50.0)  # all owners combined
    hard_stop_at_budget: bool = Field(default=True)  # False: over-limit calls warn but proceed

    # Search
    default_search_limit: int = Field(default=10)
    max_search_limit: int = Field(default=100)

    # Activity logging
    activity_queue_size: int = Field(default=1000)

    # Database
    database_path: Path = Field(default=Path("data/knowledge.db"))

    # Turso (hosted libSQL); when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # HTTP server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=None if _under_pytest() else ".env", env_file_encoding="utf-8"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if _under_pytest():
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def clamp_limit(self, limit: int | None) -> int:
        """Return *limit* bounded to ``1..max_search_limit`` (default when None)."""
        if limit is None:
            return self.default_search_limit
        return max(1, min(limit, self.max_search_limit))


settings = Settings()
