from __future__ import annotations

import asyncio
import logging
import signal

from jobsync.core.config import Settings, get_settings
from jobsync.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from jobsync.jobs.runner import ScrapeRunner
from jobsync.schemas.filters import ScrapeRequest
from jobsync.schemas.runs import RunResult
from jobsync.services.enrichment_client import EnrichmentClient, EnrichmentError
from jobsync.services.jobroom_client import JobRoomClient, build_backoff_policy
from jobsync.services.repository import get_repository
from jobsync.services.runs import RunTracker

logger = logging.getLogger(__name__)


def build_default_request(settings: Settings) -> ScrapeRequest:
    return ScrapeRequest(
        strategy=settings.default_strategy,
        max_pages=settings.default_max_pages,
        keywords=settings.default_keywords,
        cantons=settings.default_cantons,
        days_back=settings.default_days_back,
        polite=settings.scraper_polite,
    )


async def run_scrape(request: ScrapeRequest | None = None) -> RunResult:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    fetcher = JobRoomClient(
        settings.jobroom_base_url,
        polite=settings.scraper_polite,
        delay_min_ms=settings.scraper_delay_min_ms,
        delay_max_ms=settings.scraper_delay_max_ms,
        timeout_seconds=settings.scraper_request_timeout_seconds,
        max_retries=settings.scraper_max_retries,
        backoff=build_backoff_policy(settings.scraper_backoff_policy, settings.scraper_retry_delay_ms / 1000.0),
    )
    enricher: EnrichmentClient | None = None
    if settings.enrichment_enabled and settings.enrichment_service_url:
        enricher = EnrichmentClient(
            settings.enrichment_service_url,
            settings.enrichment_mode,
            timeout_seconds=settings.enrichment_timeout_seconds,
        )

    tracker = RunTracker(repository)
    runner = ScrapeRunner(
        fetcher=fetcher,
        store=repository,
        tracker=tracker,
        enricher=enricher,
        max_consecutive_errors=settings.scraper_max_consecutive_errors,
        progress_every_pages=settings.run_progress_every_pages,
    )

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handlers unavailable for %s", sig)

    try:
        if enricher is not None:
            try:
                await enricher.health_check()
            except EnrichmentError as exc:
                logger.warning("enrichment service unhealthy, per-job calls may fail: %s", exc)
        await tracker.reap_stale_runs(stale_after_seconds=settings.run_stale_after_seconds)
        return await runner.run(request or build_default_request(settings), cancel_event=cancel_event)
    finally:
        await fetcher.aclose()
        if enricher is not None:
            await enricher.aclose()
        await repository.close()
        get_repository.cache_clear()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_scrape())


if __name__ == "__main__":
    main()
