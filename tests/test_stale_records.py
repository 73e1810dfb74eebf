from datetime import datetime, timedelta, timezone

from nin_processor.jobs.stale_records import claim_expired, should_requeue


def test_should_requeue_when_claim_is_older_than_threshold() -> None:
    now = datetime.now(timezone.utc)
    record = {"job_status": "IN_PROGRESS", "modified_date": now - timedelta(seconds=120)}
    assert should_requeue(record, stale_after_seconds=60, now=now)


def test_should_not_requeue_fresh_claim() -> None:
    now = datetime.now(timezone.utc)
    record = {"job_status": "IN_PROGRESS", "modified_date": now - timedelta(seconds=5)}
    assert not should_requeue(record, stale_after_seconds=60, now=now)


def test_should_not_requeue_completed_record() -> None:
    now = datetime.now(timezone.utc)
    record = {"job_status": "COMPLETED", "modified_date": now - timedelta(hours=5)}
    assert not should_requeue(record, stale_after_seconds=60, now=now)


def test_claim_expired_accepts_iso_strings_and_naive_datetimes() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert claim_expired({"modified_date": "2024-05-01T11:00:00Z"}, stale_after_seconds=600, now=now)
    assert not claim_expired({"modified_date": datetime(2024, 5, 1, 11, 59)}, stale_after_seconds=600, now=now)


def test_claim_expired_treats_missing_timestamp_as_stale() -> None:
    assert claim_expired({"job_status": "IN_PROGRESS"}, stale_after_seconds=60)
