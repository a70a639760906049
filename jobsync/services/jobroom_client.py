from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from jobsync.schemas.filters import ScrapeRequest
from jobsync.schemas.postings import JobDetail, JobSummary

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.job-room.ch/jobadservice/api/jobAdvertisements"
PAGE_SIZE = 20
LANGUAGE_PARAM = "ZW4="  # base64("en")
RESULT_LIMIT_STATUS_CODE = 412
RESULT_LIMIT_MESSAGE = "exceed max result limit"

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

BackoffPolicy = Callable[[int], float]


class FetchError(Exception):
    """Base upstream fetch error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Raised when retries are exhausted on network errors, 5xx or 429."""


class PermanentFetchError(FetchError):
    """Raised for non-retryable failures such as 4xx responses or malformed bodies."""


class RecordNotFoundError(PermanentFetchError):
    """Raised when the detail endpoint does not know the requested id."""


class RateLimitSignal(FetchError):
    """Raised when the upstream refuses a query that exceeds its result window."""


def linear_backoff(base_seconds: float) -> BackoffPolicy:
    def policy(attempt: int) -> float:
        return max(0.0, base_seconds) * attempt

    return policy


def exponential_backoff(
    base_seconds: float,
    *,
    max_seconds: float = 60.0,
    jitter: float = 0.5,
    rng: random.Random | None = None,
) -> BackoffPolicy:
    source = rng or random.Random()

    def policy(attempt: int) -> float:
        multiplier = max(0, attempt - 1)
        delay = max(0.0, base_seconds) * (2**multiplier)
        delay += source.uniform(0.0, jitter * delay) if jitter > 0 else 0.0
        return min(delay, max_seconds)

    return policy


def build_backoff_policy(name: str, base_seconds: float) -> BackoffPolicy:
    if name == "exponential":
        return exponential_backoff(base_seconds)
    if name == "linear":
        return linear_backoff(base_seconds)
    raise ValueError(f"unknown backoff policy: {name}")


class JobRoomClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        polite: bool = True,
        delay_min_ms: int = 2000,
        delay_max_ms: int = 5000,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.polite = polite
        self.delay_min_ms = delay_min_ms if delay_min_ms > 0 else 2000
        self.delay_max_ms = delay_max_ms if delay_max_ms > self.delay_min_ms else self.delay_min_ms + 3000
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.backoff = backoff or linear_backoff(1.0)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_page(self, request: ScrapeRequest, page: int) -> list[JobSummary]:
        params = {
            "page": page,
            "size": PAGE_SIZE,
            "sort": "date_desc",
            "_ng": LANGUAGE_PARAM,
        }
        logger.debug(
            "fetching job list page=%s keywords=%r cantons=%s",
            page,
            request.keywords,
            ",".join(request.cantons),
        )
        response = await self._request(
            "POST",
            f"{self.base_url}/_search",
            params=params,
            json=request.build_search_body(),
            polite=self.polite and request.polite,
        )
        if not response.content.strip():
            return []

        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentFetchError(f"failed to decode search response: {exc}") from exc
        if not isinstance(payload, list):
            raise PermanentFetchError("search response is not a list")

        summaries: list[JobSummary] = []
        try:
            for item in payload:
                advertisement = item.get("jobAdvertisement") if isinstance(item, dict) else None
                if not isinstance(advertisement, dict):
                    raise PermanentFetchError("search hit is missing jobAdvertisement")
                summaries.append(JobSummary.model_validate(advertisement))
        except ValidationError as exc:
            raise PermanentFetchError(f"failed to parse search hit: {exc}") from exc

        logger.debug("fetched jobs page=%s count=%s", page, len(summaries))
        return summaries

    async def fetch_detail(self, job_id: str, *, polite: bool | None = None) -> JobDetail:
        should_pause = self.polite if polite is None else self.polite and polite
        try:
            response = await self._request(
                "GET",
                f"{self.base_url}/{quote(job_id, safe='')}",
                params={"_ng": LANGUAGE_PARAM},
                polite=should_pause,
            )
        except PermanentFetchError as exc:
            if exc.status_code == 404:
                raise RecordNotFoundError(f"job not found: {job_id}", status_code=404) from exc
            raise

        raw_text = response.text.strip()
        try:
            detail = JobDetail.model_validate_json(raw_text)
        except ValidationError as exc:
            raise PermanentFetchError(f"failed to parse job detail {job_id}: {exc}") from exc
        detail.raw_data = raw_text

        logger.debug("fetched job detail id=%s status=%s", job_id, detail.status)
        return detail

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self._rng.choice(USER_AGENTS),
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.9,de;q=0.8",
            "Cache-Control": "no-cache",
            "Origin": "https://www.job-room.ch",
            "Referer": "https://www.job-room.ch/home/job-seeker",
        }

    async def _polite_pause(self) -> None:
        delay_ms = self._rng.uniform(self.delay_min_ms, self.delay_max_ms)
        logger.debug("polite mode: sleeping before request delay_ms=%.0f", delay_ms)
        await self._sleep(delay_ms / 1000.0)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        polite: bool,
    ) -> httpx.Response:
        if polite:
            await self._polite_pause()

        client = self._get_client()
        last_error: FetchError | None = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.backoff(attempt)
                logger.debug("retrying request attempt=%s delay_s=%.2f url=%s", attempt, delay, url)
                await self._sleep(delay)

            try:
                response = await client.request(method, url, params=params, json=json, headers=self._headers())
            except httpx.HTTPError as exc:
                last_error = TransientFetchError(f"request failed: {exc}")
                continue

            if response.is_success:
                return response

            status_code = response.status_code
            body = response.text[:500]
            if status_code == RESULT_LIMIT_STATUS_CODE or RESULT_LIMIT_MESSAGE in body:
                raise RateLimitSignal(f"unexpected status {status_code}: {body}", status_code=status_code)
            if 400 <= status_code < 500 and status_code != 429:
                raise PermanentFetchError(f"unexpected status {status_code}: {body}", status_code=status_code)
            last_error = TransientFetchError(f"unexpected status {status_code}: {body}", status_code=status_code)

        raise last_error or TransientFetchError(f"no attempt succeeded for {url}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client
