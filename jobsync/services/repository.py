from __future__ import annotations

import asyncio
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from jobsync.core.config import get_settings
from jobsync.schemas.postings import (
    Company,
    JobDetail,
    Location,
    parse_coordinate,
    parse_date,
    parse_positions,
    parse_workload,
)

JOB_CHILD_TABLES = (
    "employments",
    "publications",
    "apply_channels",
    "job_descriptions",
    "occupations",
)
RUN_COUNTER_COLUMNS = (
    "jobs_processed",
    "jobs_inserted",
    "jobs_updated",
    "jobs_skipped",
    "pages_scraped",
    "enrichment_processed",
    "enrichment_skipped",
    "enrichment_failed",
)
RUN_TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
CONNECTION_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.InterfaceError)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryPersistenceError(RepositoryError):
    """Raised when a write fails and its transaction has been rolled back."""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def upsert_job(self, detail: JobDetail) -> None:
        """Persist one job with its reference entities and child rows atomically.

        Company and location ids are resolved inside the same transaction as the
        job row. Child tables are cleared and refilled from ``detail`` so they
        mirror the latest payload exactly; a failure at any step rolls back the
        whole job and leaves the previously committed version untouched.
        """
        raw_data = detail.raw_data or detail.model_dump_json(by_alias=True)
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    company_id = await self._get_or_create_company(conn=conn, company=detail.job_content.company)
                    location_id = await self._get_or_create_location(conn=conn, location=detail.job_content.location)
                    await conn.execute(
                        """
                        insert into jobs (
                          id,
                          created_time,
                          updated_time,
                          status,
                          source_system,
                          external_ref,
                          stellennummer_egov,
                          fingerprint,
                          reporting_obligation,
                          external_url,
                          number_of_positions,
                          company_id,
                          location_id,
                          raw_data
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb)
                        on conflict (id)
                        do update set
                          updated_time = excluded.updated_time,
                          status = excluded.status,
                          source_system = excluded.source_system,
                          external_ref = excluded.external_ref,
                          stellennummer_egov = excluded.stellennummer_egov,
                          fingerprint = excluded.fingerprint,
                          reporting_obligation = excluded.reporting_obligation,
                          external_url = excluded.external_url,
                          number_of_positions = excluded.number_of_positions,
                          company_id = excluded.company_id,
                          location_id = excluded.location_id,
                          raw_data = excluded.raw_data,
                          updated_at = now()
                        """,
                        detail.id,
                        detail.created_time,
                        detail.updated_time,
                        detail.status,
                        detail.source_system,
                        detail.external_reference,
                        detail.stellennummer_egov,
                        detail.fingerprint,
                        detail.reporting_obligation,
                        detail.job_content.external_url,
                        parse_positions(detail.job_content.number_of_jobs),
                        company_id,
                        location_id,
                        raw_data,
                    )
                    await self._replace_job_children(conn=conn, detail=detail)
        except asyncpg.PostgresError as exc:
            raise RepositoryPersistenceError(f"failed to upsert job {detail.id}: {exc}") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError(f"database connection lost while upserting job {detail.id}") from exc

    async def get_job_last_updated(self, job_id: str) -> tuple[datetime | None, bool]:
        pool = await self._get_pool()
        row = await pool.fetchrow("select updated_time from jobs where id = $1", job_id)
        if row is None:
            return None, False
        return row["updated_time"], True

    async def count_jobs(self) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from jobs"))

    async def create_run(self, *, strategy: str, filters: dict[str, Any]) -> int:
        pool = await self._get_pool()
        try:
            run_id = await pool.fetchval(
                """
                insert into scrape_runs (strategy, status, filters, start_time, heartbeat_at)
                values ($1, 'running', $2::jsonb, now(), now())
                returning id
                """,
                strategy,
                json.dumps(filters),
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryPersistenceError(f"failed to open run: {exc}") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost while opening run") from exc
        return int(run_id)

    async def update_run_progress(self, run_id: int, *, counters: dict[str, int]) -> bool:
        pool = await self._get_pool()
        try:
            updated = await pool.fetchval(
                """
                update scrape_runs
                set
                  jobs_processed = $2,
                  jobs_inserted = $3,
                  jobs_updated = $4,
                  jobs_skipped = $5,
                  pages_scraped = $6,
                  enrichment_processed = $7,
                  enrichment_skipped = $8,
                  enrichment_failed = $9,
                  heartbeat_at = now()
                where id = $1 and status = 'running'
                returning id
                """,
                run_id,
                *self._counter_values(counters),
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryPersistenceError(f"failed to record progress for run {run_id}: {exc}") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError(f"database connection lost while recording run {run_id}") from exc
        return updated is not None

    async def finalize_run(
        self,
        run_id: int,
        *,
        status: str,
        stop_reason: str | None,
        counters: dict[str, int],
        error_log: str | None,
    ) -> None:
        if status not in RUN_TERMINAL_STATUSES:
            raise RepositoryConflictError(f"run cannot be finalized with status {status}")

        pool = await self._get_pool()
        try:
            updated = await pool.fetchval(
                """
                update scrape_runs
                set
                  status = $2::scrape_status,
                  stop_reason = $3,
                  end_time = now(),
                  heartbeat_at = now(),
                  jobs_processed = $4,
                  jobs_inserted = $5,
                  jobs_updated = $6,
                  jobs_skipped = $7,
                  pages_scraped = $8,
                  enrichment_processed = $9,
                  enrichment_skipped = $10,
                  enrichment_failed = $11,
                  error_log = $12
                where id = $1 and status = 'running'
                returning id
                """,
                run_id,
                status,
                stop_reason,
                *self._counter_values(counters),
                error_log,
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryPersistenceError(f"failed to finalize run {run_id}: {exc}") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError(f"database connection lost while finalizing run {run_id}") from exc
        if updated is None:
            raise RepositoryConflictError(f"run {run_id} is missing or already finalized")

    async def fail_stale_runs(self, *, stale_after_seconds: int, reason: str) -> list[int]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                update scrape_runs
                set
                  status = 'failed',
                  end_time = now(),
                  error_log = concat_ws(E'\\n', error_log, $2::text)
                where status = 'running'
                  and coalesce(heartbeat_at, start_time) < now() - make_interval(secs => $1::double precision)
                returning id
                """,
                float(max(0, stale_after_seconds)),
                reason,
            )
        except asyncpg.PostgresError as exc:
            raise RepositoryPersistenceError(f"failed to reap stale runs: {exc}") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost while reaping stale runs") from exc
        return [int(row["id"]) for row in rows]

    async def get_run(self, run_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id,
              strategy,
              status::text as status,
              stop_reason,
              start_time,
              end_time,
              heartbeat_at,
              jobs_processed,
              jobs_inserted,
              jobs_updated,
              jobs_skipped,
              pages_scraped,
              enrichment_processed,
              enrichment_skipped,
              enrichment_failed,
              filters,
              error_log
            from scrape_runs
            where id = $1
            """,
            run_id,
        )
        if row is None:
            raise RepositoryNotFoundError(f"run not found: {run_id}")
        return self._run_row_to_dict(row)

    async def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              strategy,
              status::text as status,
              stop_reason,
              start_time,
              end_time,
              heartbeat_at,
              jobs_processed,
              jobs_inserted,
              jobs_updated,
              jobs_skipped,
              pages_scraped,
              enrichment_processed,
              enrichment_skipped,
              enrichment_failed,
              filters,
              error_log
            from scrape_runs
            order by start_time desc, id desc
            limit $1
            """,
            max(1, limit),
        )
        return [self._run_row_to_dict(row) for row in rows]

    async def _get_or_create_company(self, *, conn: asyncpg.Connection, company: Company) -> int | None:
        name = self._coerce_text(company.name)
        if name is None:
            return None

        company_id = await conn.fetchval(
            """
            insert into companies (
              name,
              street,
              house_number,
              postal_code,
              city,
              country_iso_code,
              phone,
              email,
              website,
              surrogate
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            on conflict (name, (coalesce(postal_code, '')), (coalesce(city, ''))) do nothing
            returning id
            """,
            name,
            company.street,
            company.house_number,
            company.postal_code,
            company.city,
            company.country_iso_code,
            company.phone,
            company.email,
            company.website,
            company.surrogate,
        )
        if company_id is not None:
            return int(company_id)

        company_id = await conn.fetchval(
            """
            select id
            from companies
            where name = $1
              and coalesce(postal_code, '') = $2
              and coalesce(city, '') = $3
            """,
            name,
            company.postal_code or "",
            company.city or "",
        )
        if company_id is None:
            raise RepositoryConflictError("failed to resolve existing company after conflict")
        return int(company_id)

    async def _get_or_create_location(self, *, conn: asyncpg.Connection, location: Location) -> int | None:
        if not any(location.unique_key):
            return None

        location_id = await conn.fetchval(
            """
            insert into locations (
              remarks,
              city,
              postal_code,
              communal_code,
              region_code,
              canton_code,
              country_iso_code,
              lat,
              lon
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            on conflict ((coalesce(postal_code, '')), (coalesce(city, '')), (coalesce(canton_code, ''))) do nothing
            returning id
            """,
            location.remarks,
            location.city,
            location.postal_code,
            location.communal_code,
            location.region_code,
            location.canton_code,
            location.country_iso_code,
            self._coerce_decimal(parse_coordinate(location.coordinates.lat)),
            self._coerce_decimal(parse_coordinate(location.coordinates.lon)),
        )
        if location_id is not None:
            return int(location_id)

        postal_code, city, canton_code = location.unique_key
        location_id = await conn.fetchval(
            """
            select id
            from locations
            where coalesce(postal_code, '') = $1
              and coalesce(city, '') = $2
              and coalesce(canton_code, '') = $3
            """,
            postal_code,
            city,
            canton_code,
        )
        if location_id is None:
            raise RepositoryConflictError("failed to resolve existing location after conflict")
        return int(location_id)

    async def _replace_job_children(self, *, conn: asyncpg.Connection, detail: JobDetail) -> None:
        for table in JOB_CHILD_TABLES:
            await conn.execute(f"delete from {table} where job_id = $1", detail.id)

        content = detail.job_content
        employment = content.employment
        await conn.execute(
            """
            insert into employments (
              job_id,
              start_date,
              end_date,
              short_employment,
              immediately,
              permanent,
              workload_min,
              workload_max
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            detail.id,
            parse_date(employment.start_date),
            parse_date(employment.end_date),
            employment.short_employment,
            employment.immediately,
            employment.permanent,
            self._bounded_workload(parse_workload(employment.workload_percentage_min)),
            self._bounded_workload(parse_workload(employment.workload_percentage_max)),
        )

        publication = detail.publication
        await conn.execute(
            """
            insert into publications (
              job_id,
              start_date,
              end_date,
              eures_display,
              public_display,
              restricted_display,
              company_anonymous
            )
            values ($1, $2, $3, $4, $5, $6, $7)
            """,
            detail.id,
            parse_date(publication.start_date),
            parse_date(publication.end_date),
            publication.eures_display,
            publication.public_display,
            publication.restricted_display,
            publication.company_anonymous,
        )

        channel = content.apply_channel
        await conn.execute(
            """
            insert into apply_channels (
              job_id,
              raw_post_address,
              post_address,
              email_address,
              phone_number,
              form_url,
              additional_info
            )
            values ($1, $2, $3, $4, $5, $6, $7)
            """,
            detail.id,
            channel.raw_post_address,
            channel.post_address,
            channel.email_address,
            channel.phone_number,
            channel.form_url,
            channel.additional_info,
        )

        if content.job_descriptions:
            await conn.executemany(
                """
                insert into job_descriptions (job_id, language_iso_code, title, description)
                values ($1, $2, $3, $4)
                on conflict (job_id, language_iso_code)
                do update set
                  title = excluded.title,
                  description = excluded.description
                """,
                [
                    (detail.id, item.language_iso_code, item.title, item.description)
                    for item in content.job_descriptions
                ],
            )

        if content.occupations:
            await conn.executemany(
                """
                insert into occupations (
                  job_id,
                  avam_occupation_code,
                  work_experience,
                  education_code,
                  qualification_code
                )
                values ($1, $2, $3, $4, $5)
                """,
                [
                    (
                        detail.id,
                        item.avam_occupation_code,
                        item.work_experience,
                        item.education_code,
                        item.qualification_code,
                    )
                    for item in content.occupations
                ],
            )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JOBSYNC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _counter_values(counters: dict[str, int]) -> list[int]:
        return [int(counters.get(column, 0)) for column in RUN_COUNTER_COLUMNS]

    @staticmethod
    def _run_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        filters = row["filters"]
        if isinstance(filters, str):
            try:
                filters = json.loads(filters)
            except json.JSONDecodeError:
                filters = None
        payload = dict(row)
        payload["filters"] = filters if isinstance(filters, dict) else None
        return payload

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_decimal(value: float | None) -> Decimal | None:
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    @staticmethod
    def _bounded_workload(value: int | None) -> int | None:
        if value is None or value < 0 or value > 100:
            return None
        return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
