from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    worker_id: str = "inbound-worker"
    log_level: str = "INFO"
    log_json: bool = False

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0

    supabase_url: str = "http://localhost:54321"
    supabase_service_key: str | None = None
    storage_default_bucket: str = "email-content"

    mapbox_token: str | None = None
    mapbox_base_url: str = "https://api.mapbox.com"

    batch_size: int = 25
    concurrency_limit: int = 5
    max_attempts: int = 3
    poll_interval_seconds: float = 3.0
    batch_pause_seconds: float = 0.5
    error_backoff_seconds: float = 5.0
    max_backoff_seconds: float = 30.0
    stale_reset_interval_seconds: float = 60.0
    stale_threshold_seconds: int = 300
    step_timeout_seconds: float = 20.0
    geocode_timeout_seconds: float = 10.0
    http_timeout_seconds: float = 10.0
    shutdown_drain_seconds: float = 10.0

    dedup_window_hours: int = 168
    update_window_hours: int = 48
    default_cooldown_seconds: int = 60
    default_pickup_radius_miles: float = 200.0
    expiration_grace_minutes: int = 30
    fullcircle_expiration_grace_minutes: int = 40
    body_text_max_chars: int = 50000
    matching_feature_key: str = "load_hunter_matching"

    metrics_window_seconds: float = 60.0
    metrics_report_interval_seconds: float = 60.0

    health_enabled: bool = True
    health_host: str = "0.0.0.0"
    health_port: int = 8080

    otel_enabled: bool = True
    otel_service_name: str = "loadhunter-inbound-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="LH_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
