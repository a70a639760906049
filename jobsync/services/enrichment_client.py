from __future__ import annotations

import logging
from urllib.parse import quote

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

ENRICHMENT_MODES = {"process", "normalize", "translate"}


class EnrichmentError(Exception):
    """Raised when the enrichment service rejects or garbles a per-job request."""


class EnrichmentResult(BaseModel):
    job_id: str | None = Field(default=None, validation_alias=AliasChoices("job_id", "jobId"))
    skipped: bool = False
    skip_reason: str | None = Field(default=None, validation_alias=AliasChoices("skip_reason", "skipReason"))
    saved_to_db: bool = Field(default=False, validation_alias=AliasChoices("saved_to_db", "savedToDB"))


class EnrichmentClient:
    def __init__(
        self,
        base_url: str,
        mode: str,
        *,
        timeout_seconds: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if mode not in ENRICHMENT_MODES:
            raise ValueError(f"unknown processing mode: {mode}")
        self.base_url = base_url.rstrip("/")
        self.mode = mode
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def process_job(self, job_id: str) -> EnrichmentResult:
        endpoint = f"{self.base_url}/api/v1/{self.mode}/{quote(job_id, safe='')}"
        logger.debug("calling enrichment service endpoint=%s job_id=%s mode=%s", endpoint, job_id, self.mode)

        try:
            response = await self._get_client().post(endpoint, json={})
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"failed to call enrichment service: {exc}") from exc

        if response.status_code != 200:
            raise EnrichmentError(f"enrichment service returned status {response.status_code}: {response.text[:500]}")

        try:
            result = EnrichmentResult.model_validate_json(response.content)
        except ValidationError as exc:
            raise EnrichmentError(f"failed to parse enrichment response: {exc}") from exc

        logger.info(
            "enrichment completed job_id=%s mode=%s skipped=%s saved_to_db=%s",
            job_id,
            self.mode,
            result.skipped,
            result.saved_to_db,
        )
        return result

    async def health_check(self) -> None:
        try:
            response = await self._get_client().get(f"{self.base_url}/health")
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"enrichment service not reachable: {exc}") from exc
        if response.status_code != 200:
            raise EnrichmentError(f"enrichment service health check failed: status {response.status_code}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client
