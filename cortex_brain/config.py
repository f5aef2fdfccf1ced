"""Configuration management for Cortex Brain."""

from __future__ import annotations

import os
import socket
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CORTEX_",
        extra="ignore",
    )

    debug: bool = Field(False, description="Enable debug mode")
    database_url: str = Field("sqlite:///cortex.db", description="Database connection URL")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Logging verbosity"
    )
    api_token: str | None = Field(None, description="Bearer token required by the HTTP API")

    # worker
    worker_interval: float = Field(5.0, description="Seconds between worker ticks")
    worker_id: str = Field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    lease_timeout: float = Field(600.0, description="Seconds before a processing job is requeued")
    max_attempts: int = Field(3, ge=1, description="Claims allowed before a job is failed")
    reaper_every: int = Field(12, ge=1, description="Run the reaper every N ticks")
    max_query_length: int = Field(8000, ge=1)

    # recall
    recall_mode: Literal["lexical", "vector"] = "lexical"
    recall_limit: int = Field(5, ge=1)
    vector_limit: int = Field(4, ge=1)
    vector_candidates: int = Field(100, ge=1)

    # embeddings
    embedding_backend: Literal["hash", "sentence-transformers", "openai"] = "hash"
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dims: int = Field(64, ge=1)

    # language model
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout: float = 60.0
    llm_max_retries: int = Field(3, ge=0)
    llm_retry_base_delay: float = Field(1.0, ge=0)
    arbiter_enabled: bool = False

    # event stream
    stream_key: str = "BRAIN_STREAM"
    stream_group: str = "BRAIN_WORKERS"
    stream_consumer: str = "WORKER_1"
    stream_block: float = Field(5.0, ge=0)
    stream_retry_idle: float = Field(60.0, ge=0)

    # event log
    event_log_path: str = "logs"
    event_log_max_bytes: int = 5_000_000
    event_log_db: str | None = None

    # dreaming
    dream_enabled: bool = False
    dream_interval: float = 900.0

    @field_validator("worker_interval")
    @classmethod
    def _short_interval(cls, value: float) -> float:
        if not 0 < value < 10:
            raise ValueError("worker_interval must be between 0 and 10 seconds")
        return value

    @classmethod
    def load(cls) -> "Settings":
        """Load settings using optional env file from ``CORTEX_CONFIG_FILE``."""
        env_file = os.getenv("CORTEX_CONFIG_FILE")
        kwargs = {"_env_file": env_file} if env_file else {}
        return cls(**kwargs)


try:
    settings = Settings.load()
except ValidationError as exc:  # pragma: no cover - fail hard on import
    raise SystemExit(f"Invalid configuration: {exc}")

__all__ = ["Settings", "settings"]
