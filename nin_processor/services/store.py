from __future__ import annotations

import asyncio
import itertools
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

from nin_processor.jobs.stale_records import should_requeue
from nin_processor.services.outcomes import (
    BULK_STATUS_COMPLETED,
    BULK_STATUS_IN_PROGRESS,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_IN_PROGRESS,
    JOB_STATUS_PENDING,
    STARTABLE_BULK_STATUSES,
    RecordOutcome,
    expiry_for,
    normalize_bulk_status,
)
from nin_processor.services.repository import BulkJob, ClaimedRecord, LookupIdentity


class InMemoryRepository:
    """Process-local store for local runs and tests; rows are plain dicts keyed by pk."""

    def __init__(self) -> None:
        self.bulk_jobs: dict[int, dict[str, Any]] = {}
        self.records: dict[int, dict[str, Any]] = {}
        self.lookup: dict[str, dict[str, Any]] = {}
        self._bulk_pks = itertools.count(1)
        self._record_pks = itertools.count(1)
        self._lock = asyncio.Lock()

    def add_bulk_job(
        self,
        *,
        service_mode: str = "mock",
        status: str | None = "INITIATED",
        file_name: str = "upload.csv",
        wrapper_fk: int | None = None,
        bulk_id: str | None = None,
        user_fk: int | None = None,
    ) -> int:
        pk = next(self._bulk_pks)
        now = datetime.now(timezone.utc)
        self.bulk_jobs[pk] = {
            "pk": pk,
            "bulk_id": bulk_id or f"bulk-{pk}",
            "status": status,
            "service_mode": service_mode,
            "file_name": file_name,
            "wrapper_fk": wrapper_fk,
            "number_of_records": 0,
            "user_fk": user_fk,
            "completion_date": None,
            "expiry_date": None,
            "created_date": now,
            "modified_date": now,
            "is_report_uploaded": False,
        }
        return pk

    def add_records(self, bulk_pk: int, search_parameters: list[str]) -> list[int]:
        base = datetime.now(timezone.utc)
        pks: list[int] = []
        for offset, search_parameter in enumerate(search_parameters):
            pk = next(self._record_pks)
            created = base + timedelta(microseconds=offset)
            self.records[pk] = {
                "pk": pk,
                "bulk_fk": bulk_pk,
                "search_parameter": search_parameter,
                "job_status": None,
                "transaction_status": None,
                "retrieval_mode": None,
                "status": None,
                "failure_reason": None,
                "created_date": created,
                "modified_date": created,
            }
            pks.append(pk)
        self.bulk_jobs[bulk_pk]["number_of_records"] += len(pks)
        return pks

    def records_for(self, bulk_pk: int) -> list[dict[str, Any]]:
        return [row for row in self.records.values() if row["bulk_fk"] == bulk_pk]

    async def close(self) -> None:
        return None

    async def get_bulk_job(self, bulk_pk: int) -> BulkJob | None:
        row = self.bulk_jobs.get(bulk_pk)
        return self._bulk_job_row_to_dataclass(row) if row else None

    async def start_bulk_job(self, bulk_pk: int) -> BulkJob | None:
        async with self._lock:
            row = self.bulk_jobs.get(bulk_pk)
            if row is None or normalize_bulk_status(row["status"]) not in STARTABLE_BULK_STATUSES:
                return None
            row["status"] = BULK_STATUS_IN_PROGRESS
            row["modified_date"] = datetime.now(timezone.utc)
            return self._bulk_job_row_to_dataclass(row)

    async def count_unprocessed_records(self, bulk_pk: int) -> int:
        return sum(1 for row in self.records_for(bulk_pk) if _is_claimable(row))

    async def claim_records(self, bulk_pk: int, limit: int) -> list[ClaimedRecord]:
        async with self._lock:
            claimable = sorted(
                (row for row in self.records_for(bulk_pk) if _is_claimable(row)),
                key=lambda row: (row["created_date"], row["pk"]),
            )[: max(1, limit)]
            now = datetime.now(timezone.utc)
            for row in claimable:
                row["job_status"] = JOB_STATUS_IN_PROGRESS
                row["modified_date"] = now
            return [
                ClaimedRecord(pk=row["pk"], search_parameter=row["search_parameter"], created_date=row["created_date"])
                for row in claimable
            ]

    async def update_record_outcome(
        self,
        record_pk: int,
        outcome: RecordOutcome,
        *,
        now: datetime | None = None,
    ) -> None:
        row = self.records.get(record_pk)
        if row is None:
            return
        row.update(
            job_status=outcome.job_status,
            transaction_status=outcome.transaction_status,
            retrieval_mode=outcome.retrieval_mode,
            status=outcome.status,
            failure_reason=outcome.failure_reason,
            modified_date=now or datetime.now(timezone.utc),
        )

    async def lookup_exists(self, search_parameter: str) -> bool:
        return search_parameter in self.lookup

    async def upsert_lookup(self, search_parameter: str, identity: LookupIdentity) -> None:
        now = datetime.now(timezone.utc)
        existing = self.lookup.get(search_parameter)
        created = existing["created_date"] if existing else now
        self.lookup[search_parameter] = {
            "search_parameter": search_parameter,
            **asdict(identity),
            "created_date": created,
            "modified_date": now,
        }

    async def count_incomplete_records(self, bulk_pk: int) -> int:
        return sum(1 for row in self.records_for(bulk_pk) if row["job_status"] != JOB_STATUS_COMPLETED)

    async def complete_bulk_job(self, bulk_pk: int, *, completed_at: datetime) -> BulkJob | None:
        async with self._lock:
            row = self.bulk_jobs.get(bulk_pk)
            if row is None or normalize_bulk_status(row["status"]) == BULK_STATUS_COMPLETED:
                return None
            row.update(
                status=BULK_STATUS_COMPLETED,
                completion_date=completed_at,
                modified_date=completed_at,
                expiry_date=expiry_for(completed_at),
            )
            return self._bulk_job_row_to_dataclass(row)

    async def requeue_stale_records(self, bulk_pk: int, *, stale_after_seconds: int, limit: int) -> int:
        async with self._lock:
            now = datetime.now(timezone.utc)
            stale = sorted(
                (
                    row
                    for row in self.records_for(bulk_pk)
                    if should_requeue(row, stale_after_seconds=stale_after_seconds, now=now)
                ),
                key=lambda row: (row["modified_date"], row["pk"]),
            )[: max(1, limit)]
            for row in stale:
                row["job_status"] = JOB_STATUS_PENDING
                row["modified_date"] = now
            return len(stale)

    @staticmethod
    def _bulk_job_row_to_dataclass(row: dict[str, Any]) -> BulkJob:
        return BulkJob(
            pk=row["pk"],
            bulk_id=row["bulk_id"],
            status=row["status"],
            service_mode=row["service_mode"],
            file_name=row["file_name"],
            wrapper_fk=row["wrapper_fk"],
            number_of_records=row["number_of_records"],
            user_fk=row["user_fk"],
            completion_date=row["completion_date"],
            expiry_date=row["expiry_date"],
            modified_date=row["modified_date"],
            is_report_uploaded=row["is_report_uploaded"],
        )


def _is_claimable(row: dict[str, Any]) -> bool:
    return row["job_status"] is None or row["job_status"] == JOB_STATUS_PENDING
