from __future__ import annotations

import logging
from datetime import datetime, timezone

from nin_processor.services.lookup_cache import LookupCache
from nin_processor.services.outcomes import (
    RecordOutcome,
    cache_hit,
    provider_failed,
    provider_not_verified,
    provider_verified,
)
from nin_processor.services.provider import (
    SUBJECT_CONSENT,
    ProviderOutcome,
    ProviderResult,
    VerificationProvider,
)
from nin_processor.services.repository import ClaimedRecord, VerificationRepository

logger = logging.getLogger(__name__)


async def resolve_record(
    record: ClaimedRecord,
    *,
    cache: LookupCache,
    provider: VerificationProvider,
    repository: VerificationRepository,
) -> RecordOutcome:
    """Resolve one claimed record from the cache or the provider and persist the outcome.

    A cache lookup failure propagates to the caller. Provider failures become a
    FAILED outcome. A failed outcome write is logged and swallowed, which leaves
    the record IN_PROGRESS.
    """
    if await cache.contains(record.search_parameter):
        logger.info("search_parameter=%s found in lookup cache; skipping provider call", record.search_parameter)
        outcome = cache_hit()
    else:
        outcome = await _resolve_with_provider(record, cache=cache, provider=provider)

    await _persist_outcome(repository, record, outcome)
    return outcome


async def _resolve_with_provider(
    record: ClaimedRecord,
    *,
    cache: LookupCache,
    provider: VerificationProvider,
) -> RecordOutcome:
    try:
        result = await provider.resolve(record.search_parameter, consent=SUBJECT_CONSENT)
        logger.info(
            "%s provider response search_parameter=%s outcome=%s http_status=%s",
            provider.name,
            record.search_parameter,
            result.outcome.value,
            result.http_status,
        )
        return await _outcome_from_result(record, result, cache=cache)
    except Exception as exc:
        logger.warning(
            "resolution failed search_parameter=%s record_pk=%s: %s",
            record.search_parameter,
            record.pk,
            exc,
        )
        return provider_failed(str(exc) or exc.__class__.__name__)


async def _outcome_from_result(record: ClaimedRecord, result: ProviderResult, *, cache: LookupCache) -> RecordOutcome:
    if result.outcome is ProviderOutcome.FOUND:
        if result.identity is not None:
            await cache.remember(record.search_parameter, result.identity)
        return provider_verified()
    if result.outcome is ProviderOutcome.NOT_FOUND:
        return provider_not_verified(result.business_status)
    if result.outcome is ProviderOutcome.CLIENT_ERROR:
        return provider_not_verified(result.message)
    return provider_failed(result.message)


async def _persist_outcome(repository: VerificationRepository, record: ClaimedRecord, outcome: RecordOutcome) -> None:
    try:
        await repository.update_record_outcome(record.pk, outcome, now=datetime.now(timezone.utc))
    except Exception:
        logger.exception(
            "failed to persist outcome record_pk=%s status=%s; record stays IN_PROGRESS",
            record.pk,
            outcome.status,
        )
