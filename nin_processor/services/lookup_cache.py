from __future__ import annotations

import logging

from nin_processor.services.repository import LookupIdentity, VerificationRepository

logger = logging.getLogger(__name__)


class LookupCache:
    """Previously resolved identities, consulted before any provider call."""

    def __init__(self, repository: VerificationRepository) -> None:
        self.repository = repository

    async def contains(self, search_parameter: str) -> bool:
        return await self.repository.lookup_exists(search_parameter)

    async def remember(self, search_parameter: str, identity: LookupIdentity) -> None:
        await self.repository.upsert_lookup(search_parameter, identity)
        logger.debug("cached identity for search_parameter=%s", search_parameter)
