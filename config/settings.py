"""
OmniCRM Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Paths (use OMNICRM_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="OMNICRM_DATA_PATH",
        description="Directory holding crm.db"
    )

    # Server
    port: int = Field(default=8000, alias="OMNICRM_PORT")
    host: str = Field(default="0.0.0.0", alias="OMNICRM_HOST")
    log_level: str = Field(default="INFO", alias="OMNICRM_LOG_LEVEL")

    # Local LLM summarizer (Ollama)
    ollama_host: str = Field(default="http://localhost:11434", alias="OLLAMA_HOST")
    ollama_model: str = Field(default="qwen2.5:7b-instruct", alias="OLLAMA_MODEL")
    ollama_timeout: int = Field(default=45, alias="OLLAMA_TIMEOUT")  # 7B model needs more time

    # Sync coordination
    sync_staleness_minutes: int = Field(
        default=30,
        alias="OMNICRM_SYNC_STALENESS_MINUTES",
        description="Cached state younger than this is served for push-capable platforms"
    )
    sync_lease_seconds: int = Field(
        default=900,
        alias="OMNICRM_SYNC_LEASE_SECONDS",
        description="A held sync lock older than this is considered abandoned"
    )
    sync_message_limit: int = Field(default=200, alias="OMNICRM_SYNC_MESSAGE_LIMIT")
    sync_history_days: int = Field(
        default=30,
        alias="OMNICRM_SYNC_HISTORY_DAYS",
        description="How far back the first sync of a platform reaches"
    )

    # Message dedup and threading
    dedup_ttl_seconds: int = Field(default=600, alias="OMNICRM_DEDUP_TTL_SECONDS")
    thread_cache_ttl_seconds: int = Field(default=1800, alias="OMNICRM_THREAD_CACHE_TTL_SECONDS")
    thread_summary_window: int = Field(
        default=50,
        alias="OMNICRM_THREAD_SUMMARY_WINDOW",
        description="Most recent messages sent to the summarizer for long threads"
    )

    @property
    def crm_db_path(self) -> Path:
        return self.data_path / "crm.db"


settings = Settings()
