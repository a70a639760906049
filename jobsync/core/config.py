from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0

    jobroom_base_url: str = "https://www.job-room.ch/jobadservice/api/jobAdvertisements"
    scraper_polite: bool = True
    scraper_delay_min_ms: int = 2000
    scraper_delay_max_ms: int = 5000
    scraper_request_timeout_seconds: float = 30.0
    scraper_max_retries: int = 3
    scraper_retry_delay_ms: int = 1000
    scraper_backoff_policy: Literal["linear", "exponential"] = "linear"
    scraper_max_consecutive_errors: int = 10

    default_strategy: Literal["full", "incremental"] = "incremental"
    default_max_pages: int = 0
    default_days_back: int = 60
    default_keywords: str = ""
    default_cantons: list[str] = []

    enrichment_service_url: str | None = None
    enrichment_mode: Literal["none", "process", "normalize", "translate"] = "none"
    enrichment_timeout_seconds: float = 120.0

    run_progress_every_pages: int = 5
    run_stale_after_seconds: int = 3600

    otel_enabled: bool = True
    otel_service_name: str = "jobsync-scraper"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JOBSYNC_", extra="ignore")

    @property
    def enrichment_enabled(self) -> bool:
        return bool(self.enrichment_service_url) and self.enrichment_mode != "none"


@lru_cache
def get_settings() -> Settings:
    return Settings()
