from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "planbridge-api"
    environment: str = "dev"
    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    rate_limit_per_hour: int = 5
    max_tasks_per_plan: int = 50
    batch_size: int = 50
    pending_sweep_limit: int = 500
    max_retry_count: int = 3
    retry_base_seconds: int = 60
    retry_max_seconds: int = 3600
    processing_timeout_seconds: int = 900
    event_max_delivery_attempts: int = 5
    notification_recipient: str | None = None
    notification_webhook_url: str | None = None
    production_api_base_url: str = "http://localhost:9000"
    production_api_key: str = "local-production-key"
    production_timeout_seconds: float = 10.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    retry_sweep_interval_seconds: float = 300.0
    pending_sweep_interval_seconds: float = 60.0
    reaper_interval_seconds: float = 120.0
    otel_enabled: bool = True
    otel_service_name: str = "planbridge"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PB_", extra="ignore", frozen=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
