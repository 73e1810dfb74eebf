from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from nin_processor.core.config import get_settings
from nin_processor.services.outcomes import (
    BULK_STATUS_COMPLETED,
    BULK_STATUS_IN_PROGRESS,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_IN_PROGRESS,
    JOB_STATUS_PENDING,
    RecordOutcome,
    expiry_for,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write is rejected by the database."""


@dataclass(slots=True)
class BulkJob:
    pk: int
    bulk_id: str | None
    status: str | None
    service_mode: str | None
    file_name: str | None = None
    wrapper_fk: int | None = None
    number_of_records: int | None = None
    user_fk: int | None = None
    completion_date: datetime | None = None
    expiry_date: datetime | None = None
    modified_date: datetime | None = None
    is_report_uploaded: bool = False

    @property
    def is_live(self) -> bool:
        return (self.service_mode or "").strip().lower() == "live"


@dataclass(slots=True)
class ClaimedRecord:
    pk: int
    search_parameter: str
    created_date: datetime | None = None


@dataclass(slots=True)
class LookupIdentity:
    first_name: str | None = None
    middle_name: str | None = None
    surname: str | None = None
    gender: str | None = None
    date_of_birth: date | None = None
    mobile: str | None = None
    photo: str | None = None


class VerificationRepository(Protocol):
    async def close(self) -> None: ...

    async def get_bulk_job(self, bulk_pk: int) -> BulkJob | None: ...

    async def start_bulk_job(self, bulk_pk: int) -> BulkJob | None: ...

    async def count_unprocessed_records(self, bulk_pk: int) -> int: ...

    async def claim_records(self, bulk_pk: int, limit: int) -> list[ClaimedRecord]: ...

    async def update_record_outcome(
        self, record_pk: int, outcome: RecordOutcome, *, now: datetime | None = None
    ) -> None: ...

    async def lookup_exists(self, search_parameter: str) -> bool: ...

    async def upsert_lookup(self, search_parameter: str, identity: LookupIdentity) -> None: ...

    async def count_incomplete_records(self, bulk_pk: int) -> int: ...

    async def complete_bulk_job(self, bulk_pk: int, *, completed_at: datetime) -> BulkJob | None: ...

    async def requeue_stale_records(self, bulk_pk: int, *, stale_after_seconds: int, limit: int) -> int: ...


_BULK_JOB_COLUMNS = """
  pk,
  bulk_id,
  status,
  service_mode,
  file_name,
  wrapper_fk,
  number_of_records,
  user_fk,
  completion_date,
  expiry_date,
  modified_date,
  is_report_uploaded
"""


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

    async def get_bulk_job(self, bulk_pk: int) -> BulkJob | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_BULK_JOB_COLUMNS}
            from nin_bulk_verifications
            where pk = $1::bigint
            """,
            bulk_pk,
        )
        return self._bulk_job_row_to_dataclass(row) if row else None

    async def start_bulk_job(self, bulk_pk: int) -> BulkJob | None:
        """Move a startable job to IN_PROGRESS; returns None when no row qualified."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update nin_bulk_verifications
            set
              status = $2,
              modified_date = now()
            where pk = $1::bigint
              and coalesce(upper(replace(status, '-', '_')), 'INITIATED') in ('INITIATED', 'PENDING')
            returning {_BULK_JOB_COLUMNS}
            """,
            bulk_pk,
            BULK_STATUS_IN_PROGRESS,
        )
        return self._bulk_job_row_to_dataclass(row) if row else None

    async def count_unprocessed_records(self, bulk_pk: int) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)
            from nin_records
            where bulk_fk = $1::bigint
              and (job_status is null or job_status = $2)
            """,
            bulk_pk,
            JOB_STATUS_PENDING,
        )
        return int(total or 0)

    async def claim_records(self, bulk_pk: int, limit: int) -> list[ClaimedRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, limit)

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with claimable as (
                      select pk
                      from nin_records
                      where bulk_fk = $1::bigint
                        and (job_status is null or job_status = $3)
                      order by created_date asc, pk asc
                      limit $2
                      for update skip locked
                    )
                    update nin_records r
                    set
                      job_status = $4,
                      modified_date = now()
                    from claimable c
                    where r.pk = c.pk
                    returning r.pk, r.search_parameter, r.created_date
                    """,
                    bulk_pk,
                    bounded_limit,
                    JOB_STATUS_PENDING,
                    JOB_STATUS_IN_PROGRESS,
                )

        claimed = [
            ClaimedRecord(
                pk=int(row["pk"]),
                search_parameter=row["search_parameter"],
                created_date=row["created_date"],
            )
            for row in rows
        ]
        claimed.sort(key=_claim_order)
        return claimed

    async def update_record_outcome(
        self,
        record_pk: int,
        outcome: RecordOutcome,
        *,
        now: datetime | None = None,
    ) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                update nin_records
                set
                  job_status = $2,
                  transaction_status = $3,
                  retrieval_mode = $4,
                  status = $5,
                  failure_reason = $6,
                  modified_date = $7
                where pk = $1::bigint
                """,
                record_pk,
                outcome.job_status,
                outcome.transaction_status,
                outcome.retrieval_mode,
                outcome.status,
                outcome.failure_reason,
                now or datetime.now(timezone.utc),
            )
        except asyncpg.DataError as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def lookup_exists(self, search_parameter: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            "select 1 from nin_lookup where search_parameter = $1 limit 1",
            search_parameter,
        )
        return found is not None

    async def upsert_lookup(self, search_parameter: str, identity: LookupIdentity) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into nin_lookup (
                  search_parameter,
                  first_name,
                  middle_name,
                  surname,
                  gender,
                  mobile,
                  date_of_birth,
                  photo
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8)
                on conflict (search_parameter)
                do update set
                  first_name = excluded.first_name,
                  middle_name = excluded.middle_name,
                  surname = excluded.surname,
                  gender = excluded.gender,
                  mobile = excluded.mobile,
                  date_of_birth = excluded.date_of_birth,
                  photo = excluded.photo,
                  modified_date = now()
                """,
                search_parameter,
                identity.first_name,
                identity.middle_name,
                identity.surname,
                identity.gender,
                identity.mobile,
                identity.date_of_birth,
                identity.photo,
            )
        except (pg_exc.StringDataRightTruncationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def count_incomplete_records(self, bulk_pk: int) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)
            from nin_records
            where bulk_fk = $1::bigint
              and job_status is distinct from $2
            """,
            bulk_pk,
            JOB_STATUS_COMPLETED,
        )
        return int(total or 0)

    async def complete_bulk_job(self, bulk_pk: int, *, completed_at: datetime) -> BulkJob | None:
        """Mark the job COMPLETED unless it already is; None means nothing changed."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update nin_bulk_verifications
            set
              status = $2,
              completion_date = $3,
              modified_date = $3,
              expiry_date = $4
            where pk = $1::bigint
              and coalesce(upper(status), '') <> $2
            returning {_BULK_JOB_COLUMNS}
            """,
            bulk_pk,
            BULK_STATUS_COMPLETED,
            completed_at,
            expiry_for(completed_at),
        )
        return self._bulk_job_row_to_dataclass(row) if row else None

    async def requeue_stale_records(self, bulk_pk: int, *, stale_after_seconds: int, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 10000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select pk
                      from nin_records
                      where bulk_fk = $1::bigint
                        and job_status = $4
                        and modified_date <= now() - ($2::int * interval '1 second')
                      order by modified_date asc, pk asc
                      limit $3
                      for update skip locked
                    )
                    update nin_records r
                    set
                      job_status = $5,
                      modified_date = now()
                    from stale s
                    where r.pk = s.pk
                    returning r.pk
                    """,
                    bulk_pk,
                    max(0, stale_after_seconds),
                    bounded_limit,
                    JOB_STATUS_IN_PROGRESS,
                    JOB_STATUS_PENDING,
                )
                return len(rows)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("NIN_DATABASE_URL is required")

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
    def _bulk_job_row_to_dataclass(row: asyncpg.Record) -> BulkJob:
        return BulkJob(
            pk=int(row["pk"]),
            bulk_id=row["bulk_id"],
            status=row["status"],
            service_mode=row["service_mode"],
            file_name=row["file_name"],
            wrapper_fk=_coerce_int(row["wrapper_fk"]),
            number_of_records=_coerce_int(row["number_of_records"]),
            user_fk=_coerce_int(row["user_fk"]),
            completion_date=row["completion_date"],
            expiry_date=row["expiry_date"],
            modified_date=row["modified_date"],
            is_report_uploaded=bool(row["is_report_uploaded"]),
        )


def _claim_order(record: ClaimedRecord) -> tuple[datetime, int]:
    created = record.created_date or datetime.min.replace(tzinfo=timezone.utc)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (created, record.pk)


def _coerce_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@lru_cache
def get_repository() -> VerificationRepository:
    settings = get_settings()
    if settings.repository_backend.strip().lower() == "memory":
        from nin_processor.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
