from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

RunStatus = Literal["running", "completed", "failed", "cancelled"]


class StopReason(str, Enum):
    INCREMENTAL_CAUGHT_UP = "incremental cutoff reached"
    RATE_LIMITED = "upstream result limit reached"
    ERROR_THRESHOLD = "too many consecutive errors"
    EMPTY_PAGE = "no more jobs"
    MAX_PAGES_REACHED = "max pages reached"
    CANCELLED = "cancelled"
    ABORTED = "aborted by unexpected error"


@dataclass(slots=True)
class RunResult:
    run_id: int
    strategy: str
    status: RunStatus = "running"
    stop_reason: StopReason | None = None
    jobs_processed: int = 0
    jobs_inserted: int = 0
    jobs_updated: int = 0
    jobs_skipped: int = 0
    pages_scraped: int = 0
    enrichment_processed: int = 0
    enrichment_skipped: int = 0
    enrichment_failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_log(self) -> str | None:
        if not self.errors:
            return None
        return "\n".join(self.errors)

    def resolve_status(self) -> RunStatus:
        """Derive the terminal status from how the run ended."""
        if self.stop_reason is StopReason.CANCELLED:
            return "cancelled"
        if self.stop_reason in (StopReason.ERROR_THRESHOLD, StopReason.ABORTED):
            return "failed"
        if self.errors and self.jobs_inserted == 0 and self.jobs_updated == 0:
            return "failed"
        return "completed"

    def counters(self) -> dict[str, int]:
        return {
            "jobs_processed": self.jobs_processed,
            "jobs_inserted": self.jobs_inserted,
            "jobs_updated": self.jobs_updated,
            "jobs_skipped": self.jobs_skipped,
            "pages_scraped": self.pages_scraped,
            "enrichment_processed": self.enrichment_processed,
            "enrichment_skipped": self.enrichment_skipped,
            "enrichment_failed": self.enrichment_failed,
        }

