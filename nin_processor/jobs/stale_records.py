from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from nin_processor.services.outcomes import JOB_STATUS_IN_PROGRESS


def claim_expired(record: dict[str, Any], *, stale_after_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    touched = record.get("modified_date")
    if not touched:
        return True

    if isinstance(touched, str):
        touched = datetime.fromisoformat(touched.replace("Z", "+00:00"))
    if touched.tzinfo is None:
        touched = touched.replace(tzinfo=timezone.utc)

    return touched + timedelta(seconds=max(0, stale_after_seconds)) <= now


def should_requeue(record: dict[str, Any], *, stale_after_seconds: int, now: datetime | None = None) -> bool:
    return record.get("job_status") == JOB_STATUS_IN_PROGRESS and claim_expired(
        record, stale_after_seconds=stale_after_seconds, now=now
    )
