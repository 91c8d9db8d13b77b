# api/app/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across API, worker, scheduler and services.
    """

    # ─────────────────────────────────────────────
    # Pydantic Settings Config
    # ─────────────────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str
    database_url_sync: str | None = None
    database_pool_size: int = 10

    # ─────────────────────────────────────────────
    # OpenAI (background image generation)
    # ─────────────────────────────────────────────
    openai_api_key: str = ""
    openai_image_model: str = "gpt-image-1"
    openai_image_size: str = "1024x1536"

    # ─────────────────────────────────────────────
    # Weather lookup
    # ─────────────────────────────────────────────
    openweather_api_key: str = ""
    openweather_url: str = "https://api.openweathermap.org/data/2.5/weather"
    weather_timeout_seconds: float = 15.0

    # ─────────────────────────────────────────────
    # Artifact storage
    # ─────────────────────────────────────────────
    artifact_storage_path: str = "/data/artifacts"
    artifact_base_url: str = "http://localhost:8000/artifacts"
    backgrounds_prefix: str = "weather-bg"
    videos_prefix: str = "videos"

    # ─────────────────────────────────────────────
    # Render
    # ─────────────────────────────────────────────
    render_command: str = (
        "npx remotion render src/index.ts Weather {output} --props={props}"
    )
    render_work_dir: str = "."
    render_output_path: str = "/data/out"
    render_timeout_seconds: float = 600.0

    # ─────────────────────────────────────────────
    # Queue
    # ─────────────────────────────────────────────
    queue_max_attempts: int = 2
    queue_backoff_base_seconds: float = 30.0
    queue_backoff_jitter: float = 0.2
    job_retention_days: int = 30
    completed_keep_count: int = 1000
    failed_keep_count: int = 500
    job_hard_cap: int = 5000

    # ─────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────
    worker_concurrency: int = 3
    worker_rate_max: int = 3
    worker_rate_window_seconds: float = 1.0
    worker_poll_interval: float = 1.0
    worker_heartbeat_interval: float = 10.0
    worker_stall_timeout: float = 60.0
    worker_shutdown_grace_seconds: float = 30.0

    # ─────────────────────────────────────────────
    # Rate limits
    # ─────────────────────────────────────────────
    max_videos_per_day: int = 50
    caller_daily_limit: int = 10
    caller_sweep_interval_seconds: float = 3600.0
    max_image_generations_per_day: int = 20

    # ─────────────────────────────────────────────
    # Cleanup scheduler
    # ─────────────────────────────────────────────
    scheduler_enabled: bool = True
    artifact_cleanup_hour: int = 2
    job_cleanup_hour: int = 3
    artifact_retention_days: int = 30

    # ─────────────────────────────────────────────
    # API
    # ─────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    embedded_worker: bool = True
    event_queue_size: int = 100

    # ─────────────────────────────────────────────
    # Derived Properties
    # ─────────────────────────────────────────────
    @property
    def artifact_dir(self) -> Path:
        """
        Ensures artifact storage directory exists
        and returns Path object.
        """
        p = Path(self.artifact_storage_path)
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def render_output_dir(self) -> Path:
        p = Path(self.render_output_path)
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def retention_keep_counts(self) -> dict[str, int]:
        return {
            "completed": self.completed_keep_count,
            "failed": self.failed_keep_count,
        }


# ─────────────────────────────────────────────
# Cached Settings Instance
# ─────────────────────────────────────────────
@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance so config
    is only loaded once per process.
    """
    return Settings()
