from __future__ import annotations

import logging
from typing import Any, Protocol

from jobsync.schemas.filters import ScrapeRequest
from jobsync.schemas.runs import RunResult
from jobsync.services.repository import RepositoryError

logger = logging.getLogger(__name__)

STALE_RUN_REASON = "run abandoned: no heartbeat before the stale threshold"


class RunStore(Protocol):
    async def create_run(self, *, strategy: str, filters: dict[str, Any]) -> int: ...

    async def update_run_progress(self, run_id: int, *, counters: dict[str, int]) -> bool: ...

    async def finalize_run(
        self,
        run_id: int,
        *,
        status: str,
        stop_reason: str | None,
        counters: dict[str, int],
        error_log: str | None,
    ) -> None: ...

    async def fail_stale_runs(self, *, stale_after_seconds: int, reason: str) -> list[int]: ...


class RunTracker:
    """Owns the lifecycle of one ``scrape_runs`` row per ingestion run.

    ``open_run`` must succeed before anything is fetched. ``close_run`` is
    called exactly once from the runner's ``finally`` block; a failure to write
    the final row is logged rather than raised so it cannot mask the outcome
    of the run itself.
    """

    def __init__(self, store: RunStore) -> None:
        self.store = store

    async def open_run(self, request: ScrapeRequest) -> RunResult:
        run_id = await self.store.create_run(strategy=request.strategy, filters=request.to_filters_json())
        logger.info(
            "scraper started run_id=%s strategy=%s max_pages=%s polite=%s keywords=%r cantons=%s",
            run_id,
            request.strategy,
            request.max_pages,
            request.polite,
            request.keywords,
            ",".join(request.cantons),
        )
        return RunResult(run_id=run_id, strategy=request.strategy)

    async def record_progress(self, result: RunResult) -> None:
        try:
            await self.store.update_run_progress(result.run_id, counters=result.counters())
        except RepositoryError as exc:
            logger.warning("failed to record run progress run_id=%s error=%s", result.run_id, exc)

    async def close_run(self, result: RunResult) -> RunResult:
        result.status = result.resolve_status()
        stop_reason = result.stop_reason.value if result.stop_reason is not None else None
        try:
            await self.store.finalize_run(
                result.run_id,
                status=result.status,
                stop_reason=stop_reason,
                counters=result.counters(),
                error_log=result.error_log,
            )
        except RepositoryError as exc:
            logger.error("failed to finalize run run_id=%s error=%s", result.run_id, exc)

        logger.info(
            "scraper completed run_id=%s status=%s strategy=%s processed=%s inserted=%s updated=%s "
            "skipped=%s pages=%s enrichment_processed=%s enrichment_skipped=%s enrichment_failed=%s "
            "errors=%s stop_reason=%s",
            result.run_id,
            result.status,
            result.strategy,
            result.jobs_processed,
            result.jobs_inserted,
            result.jobs_updated,
            result.jobs_skipped,
            result.pages_scraped,
            result.enrichment_processed,
            result.enrichment_skipped,
            result.enrichment_failed,
            len(result.errors),
            stop_reason,
        )
        return result

    async def reap_stale_runs(self, *, stale_after_seconds: int) -> list[int]:
        run_ids = await self.store.fail_stale_runs(stale_after_seconds=stale_after_seconds, reason=STALE_RUN_REASON)
        if run_ids:
            logger.warning("marked stale runs as failed: %s", ",".join(str(run_id) for run_id in run_ids))
        return run_ids
