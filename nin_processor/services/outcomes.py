"""Terminal status tuples written against a verification record."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

JOB_STATUS_PENDING = "PENDING"
JOB_STATUS_IN_PROGRESS = "IN_PROGRESS"
JOB_STATUS_COMPLETED = "COMPLETED"

BULK_STATUS_INITIATED = "INITIATED"
BULK_STATUS_PENDING = "PENDING"
BULK_STATUS_IN_PROGRESS = "IN_PROGRESS"
BULK_STATUS_COMPLETED = "COMPLETED"
STARTABLE_BULK_STATUSES = {BULK_STATUS_INITIATED, BULK_STATUS_PENDING}

TRANSACTION_SUCCESSFUL = "SUCCESSFUL"
TRANSACTION_FAILED = "FAILED"

RETRIEVAL_SEARCH_FROM_DB = "SEARCH_FROM_DB"
RETRIEVAL_THIRD_PARTY = "THIRD_PARTY"

STATUS_VERIFIED = "VERIFIED"
STATUS_NOT_VERIFIED = "NOT VERIFIED"
STATUS_FAILED = "FAILED"

DEFAULT_FAILURE_REASON = "FAILED"
BULK_EXPIRY_WINDOW = timedelta(days=2)


@dataclass(frozen=True, slots=True)
class RecordOutcome:
    job_status: str
    transaction_status: str
    retrieval_mode: str
    status: str
    failure_reason: str | None = None

    def as_tuple(self) -> tuple[str, str, str, str]:
        return (self.job_status, self.transaction_status, self.retrieval_mode, self.status)


TERMINAL_TUPLES = {
    (JOB_STATUS_COMPLETED, TRANSACTION_SUCCESSFUL, RETRIEVAL_SEARCH_FROM_DB, STATUS_VERIFIED),
    (JOB_STATUS_COMPLETED, TRANSACTION_SUCCESSFUL, RETRIEVAL_THIRD_PARTY, STATUS_VERIFIED),
    (JOB_STATUS_COMPLETED, TRANSACTION_SUCCESSFUL, RETRIEVAL_THIRD_PARTY, STATUS_NOT_VERIFIED),
    (JOB_STATUS_COMPLETED, TRANSACTION_FAILED, RETRIEVAL_THIRD_PARTY, STATUS_FAILED),
}


def cache_hit() -> RecordOutcome:
    return RecordOutcome(JOB_STATUS_COMPLETED, TRANSACTION_SUCCESSFUL, RETRIEVAL_SEARCH_FROM_DB, STATUS_VERIFIED)


def provider_verified() -> RecordOutcome:
    return RecordOutcome(JOB_STATUS_COMPLETED, TRANSACTION_SUCCESSFUL, RETRIEVAL_THIRD_PARTY, STATUS_VERIFIED)


def provider_not_verified(reason: str | None) -> RecordOutcome:
    return RecordOutcome(
        JOB_STATUS_COMPLETED,
        TRANSACTION_SUCCESSFUL,
        RETRIEVAL_THIRD_PARTY,
        STATUS_NOT_VERIFIED,
        failure_reason=reason,
    )


def provider_failed(reason: str | None = None) -> RecordOutcome:
    return RecordOutcome(
        JOB_STATUS_COMPLETED,
        TRANSACTION_FAILED,
        RETRIEVAL_THIRD_PARTY,
        STATUS_FAILED,
        failure_reason=reason or DEFAULT_FAILURE_REASON,
    )


def is_terminal(outcome_tuple: tuple[str | None, ...]) -> bool:
    return tuple(outcome_tuple) in TERMINAL_TUPLES


def expiry_for(completed_at: datetime) -> datetime:
    return completed_at + BULK_EXPIRY_WINDOW


def normalize_bulk_status(status: str | None) -> str:
    if not status:
        return BULK_STATUS_INITIATED
    return status.strip().upper().replace("-", "_")
