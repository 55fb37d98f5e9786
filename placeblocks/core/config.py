from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "placeblocks-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    redis_url: str | None = None
    cache_ttl_seconds: int = 3600
    cache_key_prefix: str = "placeblocks"

    tour_api_base_url: str = "https://apis.data.go.kr/B551011/KorService1"
    tour_api_key: str | None = None
    naver_base_url: str = "https://openapi.naver.com/v1/search"
    naver_client_id: str | None = None
    naver_client_secret: str | None = None
    source_request_timeout_seconds: float = 10.0
    source_max_retries: int = 2

    worker_id: str = "local-worker"
    worker_concurrency: int = 2
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 300
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    job_retention_completed: int = 100
    job_retention_failed: int = 50

    pipeline_batch_size: int = 100
    pipeline_concurrency: int = 5

    monitor_min_avg_quality: float = 2.5
    monitor_max_stale_ratio: float = 0.3
    monitor_max_recent_errors: int = 100

    migration_target: str = "object_storage"
    migration_batch_size: int = 500
    object_storage_endpoint: str | None = None
    object_storage_bucket: str = "placeblocks"
    object_storage_token: str | None = None
    object_storage_prefix: str = "placeblocks"
    migration_database_url: str | None = None

    otel_enabled: bool = True
    otel_service_name: str = "placeblocks"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
