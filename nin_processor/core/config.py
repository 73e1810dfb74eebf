from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "nin-bulk-processor"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    repository_backend: str = "postgres"
    batch_size: int = 500
    max_concurrency: int = 50
    round_delay_seconds: float = 1.0
    provider_url: str | None = None
    provider_api_key: str | None = None
    provider_timeout_seconds: float = 30.0
    side_effect_base_url: str | None = None
    side_effect_timeout_seconds: float = 10.0
    stale_record_seconds: int = 900
    stale_record_batch_size: int = 1000
    otel_enabled: bool = True
    otel_service_name: str = "nin-bulk-processor"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="NIN_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
