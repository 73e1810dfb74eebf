from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime, timezone

from nin_processor.services.repository import VerificationRepository
from nin_processor.services.side_effects import SideEffectClient

logger = logging.getLogger(__name__)


async def finalize_bulk_job(
    bulk_pk: int,
    *,
    repository: VerificationRepository,
    side_effects: SideEffectClient,
    now: datetime | None = None,
) -> int:
    """Complete the job once every record is COMPLETED and return the incomplete count.

    The status write only applies to a job that is not COMPLETED yet, and side
    effects fire only when that write changed the row.
    """
    incomplete = await repository.count_incomplete_records(bulk_pk)
    if incomplete:
        logger.info("bulk_pk=%s not finalized; %s records still incomplete", bulk_pk, incomplete)
        return incomplete

    completed_at = now or datetime.now(timezone.utc)
    completed = await repository.complete_bulk_job(bulk_pk, completed_at=completed_at)
    if completed is None:
        logger.info("bulk_pk=%s already completed; skipping side effects", bulk_pk)
        return 0

    logger.info("bulk_pk=%s completed at %s", bulk_pk, completed_at.isoformat())
    try:
        job = await repository.get_bulk_job(bulk_pk) or completed
    except Exception:
        logger.exception("reload failed for bulk_pk=%s; using the completion row", bulk_pk)
        job = completed

    if job.is_live:
        await _fire("notification", bulk_pk, side_effects.send_notification(bulk_pk))

    logger.info("requesting report for bulk_pk=%s", bulk_pk)
    await _fire("report", bulk_pk, side_effects.request_report(job))
    return 0


async def _fire(label: str, bulk_pk: int, call: Awaitable[bool]) -> None:
    try:
        await call
    except Exception:
        logger.exception("%s side effect failed for bulk_pk=%s", label, bulk_pk)
