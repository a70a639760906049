from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Protocol

from opentelemetry import trace

from jobsync.core.telemetry import run_log_context
from jobsync.schemas.filters import ScrapeRequest
from jobsync.schemas.postings import JobDetail, JobSummary
from jobsync.schemas.runs import RunResult, StopReason
from jobsync.services.enrichment_client import EnrichmentResult
from jobsync.services.jobroom_client import RateLimitSignal
from jobsync.services.runs import RunTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_CONSECUTIVE_ERRORS = 10


class JobFetcher(Protocol):
    async def fetch_page(self, request: ScrapeRequest, page: int) -> list[JobSummary]: ...

    async def fetch_detail(self, job_id: str, *, polite: bool | None = None) -> JobDetail: ...


class JobStore(Protocol):
    async def get_job_last_updated(self, job_id: str) -> tuple[datetime | None, bool]: ...

    async def upsert_job(self, detail: JobDetail) -> None: ...


class JobEnricher(Protocol):
    async def process_job(self, job_id: str) -> EnrichmentResult: ...


class ScrapeRunner:
    """Drives one ingestion run: pages in order, records in page order.

    The upstream returns search hits newest-first by update time, so in
    incremental mode the first already-stored hit with an unchanged timestamp
    means everything after it is stored too and the whole run stops there.
    Processing is strictly sequential for that reason.
    """

    def __init__(
        self,
        *,
        fetcher: JobFetcher,
        store: JobStore,
        tracker: RunTracker,
        enricher: JobEnricher | None = None,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        progress_every_pages: int = 0,
    ) -> None:
        self.fetcher = fetcher
        self.store = store
        self.tracker = tracker
        self.enricher = enricher
        self.max_consecutive_errors = max(1, max_consecutive_errors)
        self.progress_every_pages = max(0, progress_every_pages)

    async def run(self, request: ScrapeRequest, *, cancel_event: asyncio.Event | None = None) -> RunResult:
        result = await self.tracker.open_run(request)
        with run_log_context(result.run_id), tracer.start_as_current_span("scraper.run") as span:
            span.set_attribute("run.id", result.run_id)
            span.set_attribute("run.strategy", request.strategy)
            try:
                await self._run_pages(request, result, cancel_event)
            except asyncio.CancelledError:
                result.stop_reason = StopReason.CANCELLED
                raise
            except Exception as exc:
                result.errors.append(f"run aborted: {exc}")
                result.stop_reason = StopReason.ABORTED
                logger.exception("run aborted run_id=%s", result.run_id)
                raise
            finally:
                await self.tracker.close_run(result)
                span.set_attribute("run.status", result.status)
        return result

    async def _run_pages(
        self,
        request: ScrapeRequest,
        result: RunResult,
        cancel_event: asyncio.Event | None,
    ) -> None:
        consecutive_errors = 0
        page = request.start_page
        end_page = request.start_page + request.max_pages if request.max_pages > 0 else None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("cancellation requested, stopping run_id=%s page=%s", result.run_id, page)
                result.stop_reason = StopReason.CANCELLED
                return
            if end_page is not None and page >= end_page:
                result.stop_reason = StopReason.MAX_PAGES_REACHED
                return

            logger.info("fetching page run_id=%s page=%s", result.run_id, page)
            with tracer.start_as_current_span("scraper.page") as page_span:
                page_span.set_attribute("page.index", page)
                try:
                    summaries = await self.fetcher.fetch_page(request, page)
                except RateLimitSignal as exc:
                    result.errors.append(f"page {page}: {exc}")
                    logger.warning("upstream result limit reached, stopping run_id=%s page=%s", result.run_id, page)
                    result.stop_reason = StopReason.RATE_LIMITED
                    return
                except Exception as exc:
                    result.errors.append(f"page {page}: {exc}")
                    logger.error("failed to fetch jobs page run_id=%s page=%s error=%s", result.run_id, page, exc)
                    consecutive_errors += 1
                    if consecutive_errors >= self.max_consecutive_errors:
                        logger.warning(
                            "too many consecutive errors, stopping run_id=%s consecutive_errors=%s",
                            result.run_id,
                            consecutive_errors,
                        )
                        result.stop_reason = StopReason.ERROR_THRESHOLD
                        return
                    page += 1
                    continue

                consecutive_errors = 0
                result.pages_scraped += 1
                page_span.set_attribute("page.count", len(summaries))

                if not summaries:
                    logger.info("no more jobs found, stopping run_id=%s page=%s", result.run_id, page)
                    result.stop_reason = StopReason.EMPTY_PAGE
                    return

                logger.info("fetched jobs from page run_id=%s page=%s count=%s", result.run_id, page, len(summaries))
                for summary in summaries:
                    if await self._process_summary(request, summary, result):
                        result.stop_reason = StopReason.INCREMENTAL_CAUGHT_UP
                        return

            if self.progress_every_pages and result.pages_scraped % self.progress_every_pages == 0:
                await self.tracker.record_progress(result)
            page += 1

    async def _process_summary(self, request: ScrapeRequest, summary: JobSummary, result: RunResult) -> bool:
        """Process one search hit; returns True when the incremental cutoff is hit."""
        result.jobs_processed += 1

        try:
            stored_updated_time, found = await self.store.get_job_last_updated(summary.id)
        except Exception as exc:
            result.errors.append(f"check {summary.id}: {exc}")
            logger.error("failed to check job run_id=%s id=%s error=%s", result.run_id, summary.id, exc)
            return False

        if (
            request.strategy == "incremental"
            and found
            and summary.updated_time is not None
            and stored_updated_time == summary.updated_time
        ):
            logger.info(
                "up to date point reached, stopping incremental run run_id=%s job_id=%s updated_time=%s",
                result.run_id,
                summary.id,
                summary.updated_time.isoformat(),
            )
            result.jobs_skipped += 1
            return True

        try:
            detail = await self.fetcher.fetch_detail(summary.id, polite=request.polite)
        except Exception as exc:
            result.errors.append(f"job {summary.id}: {exc}")
            logger.error("failed to fetch job detail run_id=%s id=%s error=%s", result.run_id, summary.id, exc)
            return False

        try:
            await self.store.upsert_job(detail)
        except Exception as exc:
            result.errors.append(f"store {summary.id}: {exc}")
            logger.error("failed to store job run_id=%s id=%s error=%s", result.run_id, summary.id, exc)
            return False

        if found:
            result.jobs_updated += 1
            logger.debug("updated job run_id=%s id=%s", result.run_id, summary.id)
        else:
            result.jobs_inserted += 1
            logger.debug("inserted job run_id=%s id=%s", result.run_id, summary.id)

        if self.enricher is not None:
            await self._enrich(self.enricher, summary.id, result)
        return False

    async def _enrich(self, enricher: JobEnricher, job_id: str, result: RunResult) -> None:
        try:
            response = await enricher.process_job(job_id)
        except Exception as exc:
            result.enrichment_failed += 1
            logger.warning("enrichment failed job_id=%s error=%s", job_id, exc)
            return

        if response.skipped:
            result.enrichment_skipped += 1
            logger.debug("enrichment skipped job_id=%s reason=%s", job_id, response.skip_reason)
        else:
            result.enrichment_processed += 1
