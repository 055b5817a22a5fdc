from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Incubator Core"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Transactions
    transaction_timeout_seconds: float = 10.0
    transaction_max_attempts: int = 4
    transaction_backoff_base_seconds: float = 0.05
    transaction_backoff_factor: float = 2.0
    transaction_backoff_max_seconds: float = 1.0
    transaction_backoff_jitter: float = 0.25

    # Matching
    matching_weight_skill: float = 0.4
    matching_weight_availability: float = 0.2
    matching_weight_rating: float = 0.2
    matching_weight_semantic: float = 0.2
    matching_weight_domain: float = 0.0
    matching_max_candidates: int = 10
    matching_notify_top: int = 3

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "incubator"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
