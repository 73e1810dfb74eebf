from __future__ import annotations

import pytest

from nin_processor.services.repository import BulkJob


class RecordingSideEffects:
    def __init__(self) -> None:
        self.notifications: list[int] = []
        self.reports: list[BulkJob] = []

    async def send_notification(self, bulk_pk: int) -> bool:
        self.notifications.append(bulk_pk)
        return True

    async def request_report(self, job: BulkJob) -> bool:
        self.reports.append(job)
        return True


@pytest.fixture
def side_effects() -> RecordingSideEffects:
    return RecordingSideEffects()
