from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from jobsync.services.enrichment_client import EnrichmentClient, EnrichmentError


def test_process_job_posts_to_mode_endpoint() -> None:
    captured: dict[str, object] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            status_code=200,
            json={"jobId": "job-7", "skipped": False, "savedToDB": True},
            request=request,
        )

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = EnrichmentClient("http://enricher.test/", "normalize", client=http_client)
            result = await client.process_job("job-7")
            assert result.job_id == "job-7"
            assert result.saved_to_db is True
            assert result.skipped is False

    asyncio.run(run())

    assert captured["method"] == "POST"
    assert captured["url"] == "http://enricher.test/api/v1/normalize/job-7"
    assert captured["body"] == {}


def test_skipped_response_carries_reason() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code=200,
            json={"jobId": "job-1", "skipped": True, "skipReason": "already processed"},
            request=request,
        )

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            result = await EnrichmentClient("http://enricher.test", "process", client=http_client).process_job("job-1")
            assert result.skipped is True
            assert result.skip_reason == "already processed"

    asyncio.run(run())


def test_non_200_status_raises_enrichment_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=502, text="bad gateway", request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = EnrichmentClient("http://enricher.test", "translate", client=http_client)
            with pytest.raises(EnrichmentError, match="status 502"):
                await client.process_job("job-1")

    asyncio.run(run())


def test_transport_failure_raises_enrichment_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = EnrichmentClient("http://enricher.test", "process", client=http_client)
            with pytest.raises(EnrichmentError, match="failed to call enrichment service"):
                await client.process_job("job-1")
            with pytest.raises(EnrichmentError, match="not reachable"):
                await client.health_check()

    asyncio.run(run())


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown processing mode"):
        EnrichmentClient("http://enricher.test", "summarize")


def test_job_id_is_encoded_as_a_single_path_segment() -> None:
    paths: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.raw_path.decode("ascii"))
        return httpx.Response(status_code=200, json={"jobId": "a/b c?d", "skipped": False}, request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            await EnrichmentClient("http://enricher.test", "process", client=http_client).process_job("a/b c?d")

    asyncio.run(run())

    assert paths == ["/api/v1/process/a%2Fb%20c%3Fd"]
