from __future__ import annotations

import logging

from nin_processor.services.repository import ClaimedRecord, VerificationRepository

logger = logging.getLogger(__name__)


async def claim_batch(repository: VerificationRepository, bulk_pk: int, batch_size: int) -> list[ClaimedRecord]:
    """Claim up to ``batch_size`` pending records, oldest first, marking them IN_PROGRESS.

    Rows locked by a concurrent claimer are skipped rather than waited on, so two
    claimers never receive the same record. Store errors propagate.
    """
    claimed = await repository.claim_records(bulk_pk, max(1, batch_size))
    logger.info("claimed records bulk_pk=%s count=%s batch_size=%s", bulk_pk, len(claimed), batch_size)
    return claimed
