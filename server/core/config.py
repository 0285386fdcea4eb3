"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    workers: int = Field(default=1, env="WORKERS", ge=1, le=8)
    cors_origins: List[str] = Field(default=["http://localhost:3000"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=60)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Execution Queue
    queue_enabled: bool = Field(default=True, env="QUEUE_ENABLED")
    queue_poll_interval: int = Field(default=30, env="QUEUE_POLL_INTERVAL", ge=1, le=3600)
    queue_batch_size: int = Field(default=10, env="QUEUE_BATCH_SIZE", ge=1, le=500)
    queue_default_max_retries: int = Field(default=3, env="QUEUE_DEFAULT_MAX_RETRIES", ge=0, le=20)
    queue_processing_lease: float = Field(default=600.0, env="QUEUE_PROCESSING_LEASE", ge=1.0)

    # Retry Policy (delay = base * multiplier ^ retry_count)
    retry_base_delay: float = Field(default=60.0, env="RETRY_BASE_DELAY", ge=0.0)
    retry_backoff_multiplier: float = Field(default=2.0, env="RETRY_BACKOFF_MULTIPLIER", ge=1.0, le=10.0)
    retry_max_delay: Optional[float] = Field(default=None, env="RETRY_MAX_DELAY", ge=0.0)

    # Circuit Breaker
    circuit_failure_threshold: int = Field(default=5, env="CIRCUIT_FAILURE_THRESHOLD", ge=1, le=100)
    circuit_reset_timeout: float = Field(default=60.0, env="CIRCUIT_RESET_TIMEOUT", ge=1.0)
    circuit_integration_type: str = Field(default="workflow_execution", env="CIRCUIT_INTEGRATION_TYPE")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True, env="RATE_LIMIT_ENABLED")
    rate_limit_requests: int = Field(default=60, env="RATE_LIMIT_REQUESTS", ge=1)
    rate_limit_window: float = Field(default=60.0, env="RATE_LIMIT_WINDOW", ge=1.0)
    rate_limit_resource_type: str = Field(default="workflow_execution", env="RATE_LIMIT_RESOURCE_TYPE")

    # Self-Healing
    self_healing_enabled: bool = Field(default=True, env="SELF_HEALING_ENABLED")

    # Node Execution (external collaborator)
    node_executor_url: Optional[str] = Field(default=None, env="NODE_EXECUTOR_URL")
    node_executor_timeout: float = Field(default=30.0, env="NODE_EXECUTOR_TIMEOUT", ge=1.0, le=600.0)
    node_result_cache_ttl: int = Field(default=300, env="NODE_RESULT_CACHE_TTL", ge=60)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
