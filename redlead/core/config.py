"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration (API process only)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, ge=1, le=65535)
    debug: bool = Field(default=False)

    # Backing store (absent => degraded mode)
    redis_url: Optional[str] = Field(default=None)
    redis_health_interval: float = Field(default=15.0, gt=0)
    redis_socket_timeout: float = Field(default=5.0, gt=0)

    # USE_QUEUE=false forces cron mode even when Redis is reachable
    use_queue: bool = Field(default=True)
    queue_prefix: str = Field(default="redlead:queue")

    # Cache Configuration
    cache_ttl: int = Field(default=3600, ge=1)
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_sweep_interval: float = Field(default=60.0, gt=0)

    # Job Workers
    worker_concurrency: int = Field(default=5, ge=1, le=100)
    worker_poll_interval: float = Field(default=1.0, gt=0)
    job_lock_duration: float = Field(default=30.0, gt=0)
    stalled_check_interval: float = Field(default=15.0, gt=0)
    job_handlers_module: Optional[str] = Field(default=None)

    # Cron fallback
    scheduler_timezone: str = Field(default="UTC")
    cron_allow_overlap: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("redis_url")
    @classmethod
    def blank_redis_url_is_none(cls, v):
        """Treat REDIS_URL="" the same as an unset variable."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("log_file")
    @classmethod
    def ensure_log_directory(cls, v):
        """Ensure the log file directory exists."""
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
