from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache

from opentelemetry import trace

from nin_processor.core.config import get_settings
from nin_processor.core.telemetry import bind_bulk_pk
from nin_processor.jobs.claimer import claim_batch
from nin_processor.jobs.finalizer import finalize_bulk_job
from nin_processor.jobs.resolver import resolve_record
from nin_processor.services.lookup_cache import LookupCache
from nin_processor.services.outcomes import BULK_STATUS_IN_PROGRESS, normalize_bulk_status
from nin_processor.services.provider import (
    LiveVerificationProvider,
    MockVerificationProvider,
    VerificationProvider,
)
from nin_processor.services.repository import BulkJob, ClaimedRecord, VerificationRepository, get_repository
from nin_processor.services.side_effects import SideEffectClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class TriggerResult:
    code: int
    success: bool
    message: str


class BulkJobDriver:
    """Runs the claim/resolve/pause loop for bulk jobs, one background task per job."""

    def __init__(
        self,
        *,
        repository: VerificationRepository,
        side_effects: SideEffectClient,
        live_provider: VerificationProvider,
        mock_provider: VerificationProvider,
        batch_size: int = 500,
        max_concurrency: int = 50,
        round_delay_seconds: float = 1.0,
        stale_record_seconds: int = 900,
        stale_record_batch_size: int = 1000,
    ) -> None:
        self.repository = repository
        self.cache = LookupCache(repository)
        self.side_effects = side_effects
        self.live_provider = live_provider
        self.mock_provider = mock_provider
        self.batch_size = max(1, batch_size)
        self.max_concurrency = max(1, max_concurrency)
        self.round_delay_seconds = max(0.0, round_delay_seconds)
        self.stale_record_seconds = max(0, stale_record_seconds)
        self.stale_record_batch_size = max(1, stale_record_batch_size)
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._resuming: set[int] = set()

    def provider_for(self, mode: str | None) -> VerificationProvider:
        if (mode or "").strip().lower() == "live":
            return self.live_provider
        return self.mock_provider

    def is_running(self, bulk_pk: int) -> bool:
        task = self._tasks.get(bulk_pk)
        return task is not None and not task.done()

    async def initiate(self, bulk_pk: int) -> TriggerResult:
        try:
            job = await self.repository.start_bulk_job(bulk_pk)
            if job is None:
                existing = await self.repository.get_bulk_job(bulk_pk)
                if existing is None:
                    return self._reject(f"Bulk with id {bulk_pk} not found")
                return self._reject(f"Bulk {bulk_pk} is {existing.status}")

            logger.info("processing bulk_pk=%s mode=%s", bulk_pk, job.service_mode)
            if self.is_running(bulk_pk):
                logger.info("bulk_pk=%s loop already running; not launching another", bulk_pk)
            else:
                self._launch(job)
            return TriggerResult(
                code=0,
                success=True,
                message=f"Request received successfully, bulk {bulk_pk} is in progress",
            )
        except Exception as exc:
            logger.exception("error initiating bulk_pk=%s", bulk_pk)
            return TriggerResult(code=-1, success=False, message=str(exc) or "Internal Server Error")

    async def resume(self, bulk_pk: int) -> TriggerResult:
        """Re-enter a job left IN_PROGRESS, requeueing records whose claim went stale.

        Only one resume per job is in flight at a time, and the running check is
        repeated right before launch.
        """
        if bulk_pk in self._resuming or self.is_running(bulk_pk):
            return self._reject(f"Bulk {bulk_pk} is already being processed")

        self._resuming.add(bulk_pk)
        try:
            job = await self.repository.get_bulk_job(bulk_pk)
            if job is None:
                return self._reject(f"Bulk with id {bulk_pk} not found")
            if normalize_bulk_status(job.status) != BULK_STATUS_IN_PROGRESS:
                return self._reject(f"Bulk {bulk_pk} is {job.status}; only IN_PROGRESS jobs can be resumed")

            requeued = await self.repository.requeue_stale_records(
                bulk_pk,
                stale_after_seconds=self.stale_record_seconds,
                limit=self.stale_record_batch_size,
            )
            if self.is_running(bulk_pk):
                return self._reject(f"Bulk {bulk_pk} is already being processed")

            logger.info("resuming bulk_pk=%s requeued_stale=%s", bulk_pk, requeued)
            self._launch(job)
            return TriggerResult(
                code=0,
                success=True,
                message=f"Bulk {bulk_pk} resumed, {requeued} stale records requeued",
            )
        except Exception as exc:
            logger.exception("error resuming bulk_pk=%s", bulk_pk)
            return TriggerResult(code=-1, success=False, message=str(exc) or "Internal Server Error")
        finally:
            self._resuming.discard(bulk_pk)

    async def run(self, bulk_pk: int, mode: str | None) -> None:
        provider = self.provider_for(mode)
        with bind_bulk_pk(bulk_pk), tracer.start_as_current_span("bulk.run") as span:
            span.set_attribute("bulk.pk", bulk_pk)
            span.set_attribute("bulk.provider", provider.name)
            try:
                rounds = 0
                while await self.repository.count_unprocessed_records(bulk_pk):
                    rounds += 1
                    claimed = await claim_batch(self.repository, bulk_pk, self.batch_size)
                    await self._resolve_round(bulk_pk, claimed, provider, round_number=rounds)
                    await asyncio.sleep(self.round_delay_seconds)

                logger.info("finished processing bulk_pk=%s rounds=%s", bulk_pk, rounds)
                span.set_attribute("bulk.rounds", rounds)
                await finalize_bulk_job(bulk_pk, repository=self.repository, side_effects=self.side_effects)
            except Exception as exc:
                span.record_exception(exc)
                logger.exception("error processing bulk_pk=%s; job left IN_PROGRESS", bulk_pk)

    async def drain(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _resolve_round(
        self,
        bulk_pk: int,
        claimed: list[ClaimedRecord],
        provider: VerificationProvider,
        *,
        round_number: int,
    ) -> None:
        if not claimed:
            return

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(record: ClaimedRecord) -> None:
            async with semaphore:
                with tracer.start_as_current_span("bulk.resolve_record") as record_span:
                    record_span.set_attribute("record.pk", record.pk)
                    await resolve_record(
                        record,
                        cache=self.cache,
                        provider=provider,
                        repository=self.repository,
                    )

        with tracer.start_as_current_span("bulk.round") as span:
            span.set_attribute("bulk.pk", bulk_pk)
            span.set_attribute("bulk.round", round_number)
            span.set_attribute("bulk.claimed", len(claimed))
            results = await asyncio.gather(*(guarded(record) for record in claimed), return_exceptions=True)

        for record, result in zip(claimed, results):
            if isinstance(result, BaseException):
                logger.error(
                    "failed processing search_parameter=%s record_pk=%s: %s",
                    record.search_parameter,
                    record.pk,
                    result,
                    exc_info=result,
                )

    def _launch(self, job: BulkJob) -> None:
        task = asyncio.create_task(self.run(job.pk, job.service_mode), name=f"bulk-{job.pk}")
        self._tasks[job.pk] = task

        def _forget(done: asyncio.Task[None], bulk_pk: int = job.pk) -> None:
            if self._tasks.get(bulk_pk) is done:
                del self._tasks[bulk_pk]

        task.add_done_callback(_forget)

    @staticmethod
    def _reject(message: str) -> TriggerResult:
        logger.info(message)
        return TriggerResult(code=0, success=False, message=message)


@lru_cache
def get_driver() -> BulkJobDriver:
    settings = get_settings()
    return BulkJobDriver(
        repository=get_repository(),
        side_effects=SideEffectClient(
            settings.side_effect_base_url,
            timeout_seconds=settings.side_effect_timeout_seconds,
        ),
        live_provider=LiveVerificationProvider(
            settings.provider_url,
            settings.provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
        mock_provider=MockVerificationProvider(),
        batch_size=settings.batch_size,
        max_concurrency=settings.max_concurrency,
        round_delay_seconds=settings.round_delay_seconds,
        stale_record_seconds=settings.stale_record_seconds,
        stale_record_batch_size=settings.stale_record_batch_size,
    )
