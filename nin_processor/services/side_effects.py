from __future__ import annotations

import logging
from typing import Any

import httpx

from nin_processor.services.repository import BulkJob

logger = logging.getLogger(__name__)

NOTIFICATION_PATH = "/bulk-verification/bulk-notification-mail"
REPORT_PATH = "/bulk-verification/upload-bulk-job-result"


class SideEffectClient:
    """Best-effort calls to the notification and report services; failures are only logged."""

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {"Accept": "application/json"}

    async def send_notification(self, bulk_pk: int) -> bool:
        return await self._dispatch(NOTIFICATION_PATH, {"bulkId": str(bulk_pk)}, label="notification")

    async def request_report(self, job: BulkJob) -> bool:
        payload = {
            "wrapperFk": job.wrapper_fk,
            "pk": job.pk,
            "filename": job.file_name,
        }
        return await self._dispatch(REPORT_PATH, payload, label="report")

    async def _dispatch(self, path: str, payload: dict[str, Any], *, label: str) -> bool:
        if not self.base_url:
            logger.warning("side effect base url not set; skipping %s payload=%s", label, payload)
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload, headers=self.headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("%s dispatch failed payload=%s: %s", label, payload, exc)
            return False

        logger.info("%s dispatched payload=%s status=%s", label, payload, response.status_code)
        return True
