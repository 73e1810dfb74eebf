from __future__ import annotations

import asyncio
import os
import random
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from nin_processor.jobs.driver import BulkJobDriver
from nin_processor.services.outcomes import cache_hit
from nin_processor.services.provider import MockVerificationProvider
from nin_processor.services.repository import BulkJob, PostgresRepository

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("NIN_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require NIN_DATABASE_URL")
    _run(_execute(url, SCHEMA_PATH.read_text()))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(
        _execute(
            database_url,
            "truncate table nin_records, nin_bulk_verifications, nin_lookup restart identity cascade",
        )
    )


def _repository(database_url: str) -> PostgresRepository:
    return PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=5)


def test_concurrent_claims_are_disjoint(database_url: str) -> None:
    bulk_pk = _run(_seed_bulk_job(database_url, status="IN_PROGRESS"))
    _run(_seed_records(database_url, bulk_pk, [f"2{index:010d}" for index in range(40)]))

    async def run() -> list[int]:
        repo = _repository(database_url)
        try:
            batches = await asyncio.gather(*(repo.claim_records(bulk_pk, 9) for _ in range(6)))
        finally:
            await repo.close()
        return [record.pk for batch in batches for record in batch]

    claimed = _run(run())

    assert len(claimed) == len(set(claimed)) == 40
    in_progress = _run(
        _fetchval(
            database_url,
            "select count(*) from nin_records where bulk_fk = $1 and job_status = 'IN_PROGRESS'",
            bulk_pk,
        )
    )
    assert in_progress == 40


def test_start_bulk_job_transitions_once(database_url: str) -> None:
    bulk_pk = _run(_seed_bulk_job(database_url))

    async def run() -> list[BulkJob | None]:
        repo = _repository(database_url)
        try:
            return list(await asyncio.gather(*(repo.start_bulk_job(bulk_pk) for _ in range(4))))
        finally:
            await repo.close()

    results = _run(run())

    assert sum(result is not None for result in results) == 1
    status = _run(_fetchval(database_url, "select status from nin_bulk_verifications where pk = $1", bulk_pk))
    assert status == "IN_PROGRESS"


def test_complete_bulk_job_sets_expiry_and_only_applies_once(database_url: str) -> None:
    bulk_pk = _run(_seed_bulk_job(database_url, status="IN_PROGRESS"))
    first_at = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    async def run() -> tuple[BulkJob | None, BulkJob | None]:
        repo = _repository(database_url)
        try:
            first = await repo.complete_bulk_job(bulk_pk, completed_at=first_at)
            second = await repo.complete_bulk_job(bulk_pk, completed_at=first_at + timedelta(hours=1))
            return first, second
        finally:
            await repo.close()

    first, second = _run(run())

    assert first is not None
    assert first.status == "COMPLETED"
    assert first.completion_date == first_at
    assert first.expiry_date == first_at + timedelta(days=2)
    assert second is None


def test_requeue_stale_records_only_touches_old_claims(database_url: str) -> None:
    bulk_pk = _run(_seed_bulk_job(database_url, status="IN_PROGRESS"))
    stale_pk, fresh_pk, done_pk = _run(
        _seed_records(database_url, bulk_pk, ["31000000001", "31000000002", "31000000003"])
    )
    _run(
        _execute(
            database_url,
            """
            update nin_records
            set job_status = 'IN_PROGRESS', modified_date = now() - interval '2 hours'
            where pk = $1
            """,
            stale_pk,
        )
    )
    _run(_execute(database_url, "update nin_records set job_status = 'IN_PROGRESS' where pk = $1", fresh_pk))

    async def run() -> int:
        repo = _repository(database_url)
        try:
            await repo.update_record_outcome(done_pk, cache_hit())
            return await repo.requeue_stale_records(bulk_pk, stale_after_seconds=600, limit=100)
        finally:
            await repo.close()

    assert _run(run()) == 1
    statuses = _run(
        _fetch_statuses(database_url, bulk_pk),
    )
    assert statuses == {stale_pk: "PENDING", fresh_pk: "IN_PROGRESS", done_pk: "COMPLETED"}


def test_driver_processes_job_end_to_end(database_url: str, side_effects: Any) -> None:
    bulk_pk = _run(_seed_bulk_job(database_url, service_mode="mock"))
    _run(_seed_records(database_url, bulk_pk, ["12345678901", "12345678902", "12345678903"]))

    async def run() -> bool:
        repo = _repository(database_url)
        provider = MockVerificationProvider(rng=random.Random(5), latency_ms=(0, 0))
        driver = BulkJobDriver(
            repository=repo,
            side_effects=side_effects,
            live_provider=provider,
            mock_provider=provider,
            batch_size=2,
            round_delay_seconds=0.0,
        )
        try:
            result = await driver.initiate(bulk_pk)
            await driver.drain()
            return result.success
        finally:
            await repo.close()

    assert _run(run()) is True
    status = _run(_fetchval(database_url, "select status from nin_bulk_verifications where pk = $1", bulk_pk))
    assert status == "COMPLETED"
    incomplete = _run(
        _fetchval(
            database_url,
            "select count(*) from nin_records where bulk_fk = $1 and job_status is distinct from 'COMPLETED'",
            bulk_pk,
        )
    )
    assert incomplete == 0
    assert [job.pk for job in side_effects.reports] == [bulk_pk]
    assert side_effects.notifications == []


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _seed_bulk_job(database_url: str, *, status: str = "INITIATED", service_mode: str = "mock") -> int:
    return int(
        await _fetchval(
            database_url,
            """
            insert into nin_bulk_verifications (bulk_id, status, service_mode, file_name, wrapper_fk)
            values ($1, $2, $3, 'upload.csv', 1)
            returning pk
            """,
            f"bulk-{random.randint(1, 10**9)}",
            status,
            service_mode,
        )
    )


async def _seed_records(database_url: str, bulk_pk: int, search_parameters: list[str]) -> list[int]:
    conn = await asyncpg.connect(database_url)
    try:
        pks: list[int] = []
        for offset, search_parameter in enumerate(search_parameters):
            pk = await conn.fetchval(
                """
                insert into nin_records (bulk_fk, search_parameter, created_date, modified_date)
                values ($1, $2, now() + ($3::int * interval '1 millisecond'), now())
                returning pk
                """,
                bulk_pk,
                search_parameter,
                offset,
            )
            pks.append(int(pk))
        await conn.execute(
            "update nin_bulk_verifications set number_of_records = $2 where pk = $1",
            bulk_pk,
            len(pks),
        )
        return pks
    finally:
        await conn.close()


async def _fetch_statuses(database_url: str, bulk_pk: int) -> dict[int, str | None]:
    conn = await asyncpg.connect(database_url)
    try:
        rows = await conn.fetch("select pk, job_status from nin_records where bulk_fk = $1", bulk_pk)
        return {int(row["pk"]): row["job_status"] for row in rows}
    finally:
        await conn.close()


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()
