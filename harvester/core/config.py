from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    jobs_table: str = "jobs"
    embedding_queue_table: str = "embedding_queue"
    matches_table: str = "matches"

    cycle_job_target: int = 0
    source_job_targets: dict[str, int] = {}
    enabled_sources: list[str] | None = None
    disabled_sources: list[str] = []
    source_timeouts: dict[str, float] = {}
    max_concurrent_sources: int = 0
    source_workdir: str | None = None
    fallback_count_window_seconds: float = 300.0
    source_fallback_windows: dict[str, float] = {"jobspy-indeed": 600.0}
    stats_cache_ttl_seconds: float = 30.0

    target_cities: list[str] | None = None
    target_career_paths: list[str] | None = None
    target_industries: list[str] | None = None
    target_roles: list[str] | None = None

    lifecycle_enabled: bool = True
    freshness_ttl_days: int = 7
    inactive_retention_days: int = 2
    purge_batch_size: int = 500

    run_on_start: bool = True
    single_run: bool = False
    cycle_interval_seconds: float = 43200.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 300.0
    serve_loop: bool = False

    embedding_refresh_command: str | None = None
    embedding_refresh_timeout_seconds: float = 1800.0
    embedding_refresh_interval_seconds: float = 21600.0

    store_health_max_silence_hours: float = 24.0
    preflight_attempts: int = 3
    preflight_base_delay_seconds: float = 1.0
    preflight_timeout_seconds: float = 10.0

    log_level: str = "INFO"

    otel_enabled: bool = True
    otel_service_name: str = "job-harvester"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HARVESTER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
