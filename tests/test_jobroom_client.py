from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from jobsync.schemas.filters import ScrapeRequest
from jobsync.services.jobroom_client import (
    USER_AGENTS,
    JobRoomClient,
    PermanentFetchError,
    RateLimitSignal,
    RecordNotFoundError,
    TransientFetchError,
    exponential_backoff,
    linear_backoff,
)

BASE_URL = "https://upstream.test/jobadservice/api/jobAdvertisements"


def _run_with_client(
    handler: Callable[[httpx.Request], Any],
    action: Callable[[JobRoomClient], Any],
    **client_kwargs: Any,
) -> tuple[Any, list[float]]:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client_kwargs.setdefault("polite", False)
            client_kwargs.setdefault("backoff", linear_backoff(1.0))
            client = JobRoomClient(BASE_URL, client=http_client, sleep=fake_sleep, **client_kwargs)
            return await action(client)

    return asyncio.run(run()), sleeps


def _search_hit(job_id: str, updated_time: str) -> dict[str, Any]:
    return {
        "jobAdvertisement": {
            "id": job_id,
            "createdTime": "2025-01-10T08:00:00.000Z",
            "updatedTime": updated_time,
            "status": "PUBLISHED_PUBLIC",
        }
    }


def test_fetch_page_posts_search_body_and_parses_summaries() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["params"] = dict(request.url.params)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            status_code=200,
            json=[
                _search_hit("job-1", "2025-02-01T10:00:00.000Z"),
                _search_hit("job-2", "2025-01-31T09:30:00.000Z"),
            ],
            request=request,
        )

    request = ScrapeRequest(keywords="python  backend", cantons=["zh", "BE"], days_back=14)
    summaries, sleeps = _run_with_client(handler, lambda client: client.fetch_page(request, 2))

    assert captured["method"] == "POST"
    assert captured["path"].endswith("/jobAdvertisements/_search")
    assert captured["params"] == {"page": "2", "size": "20", "sort": "date_desc", "_ng": "ZW4="}
    assert captured["body"]["keywords"] == ["python", "backend"]
    assert captured["body"]["cantonCodes"] == ["ZH", "BE"]
    assert captured["body"]["onlineSince"] == 14
    assert [summary.id for summary in summaries] == ["job-1", "job-2"]
    assert summaries[0].updated_time is not None
    assert summaries[0].updated_time.tzinfo is not None
    assert sleeps == []


def test_fetch_page_returns_empty_list_when_upstream_has_no_results() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json=[], request=request)

    summaries, _ = _run_with_client(handler, lambda client: client.fetch_page(ScrapeRequest(), 7))

    assert summaries == []


def test_fetch_page_surfaces_result_window_limit_without_retrying() -> None:
    calls: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(status_code=412, text="query would exceed max result limit", request=request)

    with pytest.raises(RateLimitSignal) as exc_info:
        _run_with_client(handler, lambda client: client.fetch_page(ScrapeRequest(), 500), max_retries=3)

    assert exc_info.value.status_code == 412
    assert len(calls) == 1


def test_client_errors_other_than_429_are_not_retried() -> None:
    calls: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(status_code=400, text="bad filter", request=request)

    with pytest.raises(PermanentFetchError) as exc_info:
        _run_with_client(handler, lambda client: client.fetch_page(ScrapeRequest(), 0), max_retries=3)

    assert not isinstance(exc_info.value, RateLimitSignal)
    assert exc_info.value.status_code == 400
    assert len(calls) == 1


def test_server_errors_are_retried_with_linear_backoff() -> None:
    responses = iter([500, 503, 200])

    async def handler(request: httpx.Request) -> httpx.Response:
        status_code = next(responses)
        if status_code == 200:
            return httpx.Response(status_code=200, json=[_search_hit("job-9", "2025-02-01T10:00:00Z")], request=request)
        return httpx.Response(status_code=status_code, text="upstream hiccup", request=request)

    summaries, sleeps = _run_with_client(
        handler,
        lambda client: client.fetch_page(ScrapeRequest(), 0),
        max_retries=3,
        backoff=linear_backoff(1.5),
    )

    assert [summary.id for summary in summaries] == ["job-9"]
    assert sleeps == [1.5, 3.0]


def test_too_many_requests_exhausts_retries_as_transient_error() -> None:
    calls: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(status_code=429, text="slow down", request=request)

    with pytest.raises(TransientFetchError) as exc_info:
        _run_with_client(handler, lambda client: client.fetch_page(ScrapeRequest(), 0), max_retries=2)

    assert exc_info.value.status_code == 429
    assert len(calls) == 3


def test_network_errors_are_retried() -> None:
    attempts: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status_code=200, json=[], request=request)

    summaries, sleeps = _run_with_client(handler, lambda client: client.fetch_page(ScrapeRequest(), 0))

    assert summaries == []
    assert len(attempts) == 2
    assert sleeps == [1.0]


def test_polite_mode_sleeps_inside_window_and_rotates_user_agent() -> None:
    user_agents: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        user_agents.append(request.headers["user-agent"])
        return httpx.Response(status_code=200, json=[], request=request)

    _, sleeps = _run_with_client(
        handler,
        lambda client: client.fetch_page(ScrapeRequest(polite=True), 0),
        polite=True,
        delay_min_ms=100,
        delay_max_ms=300,
        rng=random.Random(7),
    )

    assert len(sleeps) == 1
    assert 0.1 <= sleeps[0] <= 0.3
    assert user_agents[0] in USER_AGENTS


def test_request_flag_disables_politeness_for_the_page() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json=[], request=request)

    _, sleeps = _run_with_client(
        handler,
        lambda client: client.fetch_page(ScrapeRequest(polite=False), 0),
        polite=True,
    )

    assert sleeps == []


def test_fetch_detail_keeps_raw_payload_and_parses_nested_content() -> None:
    payload = {
        "id": "job-42",
        "createdTime": "2025-01-10T08:00:00Z",
        "updatedTime": "2025-01-12T08:00:00Z",
        "status": "PUBLISHED_PUBLIC",
        "fingerprint": "abc123",
        "jobContent": {
            "jobDescriptions": [
                {"languageIsoCode": "de", "title": "Entwickler", "description": "..."},
                {"languageIsoCode": "en", "title": "Developer", "description": "..."},
            ],
            "company": {"name": "Acme AG", "postalCode": "8000", "city": "Zürich"},
            "location": {"city": "Zürich", "postalCode": "8000", "cantonCode": "ZH", "coordinates": None},
            "employment": {"workloadPercentageMin": "80", "workloadPercentageMax": "100"},
            "occupations": None,
        },
    }
    raw_text = json.dumps(payload)

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path.endswith("/jobAdvertisements/job-42")
        return httpx.Response(status_code=200, text=raw_text, request=request)

    detail, _ = _run_with_client(handler, lambda client: client.fetch_detail("job-42"))

    assert detail.id == "job-42"
    assert detail.raw_data == raw_text
    assert detail.fingerprint == "abc123"
    assert [item.language_iso_code for item in detail.job_content.job_descriptions] == ["de", "en"]
    assert detail.job_content.company.unique_key == ("Acme AG", "8000", "Zürich")
    assert detail.job_content.location.unique_key == ("8000", "Zürich", "ZH")
    assert detail.job_content.occupations == []


def test_fetch_detail_maps_404_to_record_not_found() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=404, text="not found", request=request)

    with pytest.raises(RecordNotFoundError, match="job not found: job-missing"):
        _run_with_client(handler, lambda client: client.fetch_detail("job-missing"))


def test_fetch_detail_rejects_malformed_body_without_retrying() -> None:
    calls: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(status_code=200, text="<html>maintenance</html>", request=request)

    with pytest.raises(PermanentFetchError):
        _run_with_client(handler, lambda client: client.fetch_detail("job-1"))

    assert len(calls) == 1


def test_exponential_backoff_doubles_and_caps() -> None:
    policy = exponential_backoff(1.0, max_seconds=5.0, jitter=0.0)

    assert [policy(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
