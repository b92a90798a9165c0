from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from planbridge.core.config import Settings
from planbridge.core.telemetry import set_span_attributes
from planbridge.services.dispatcher import Dispatcher, ExecutionContext
from planbridge.services.notifications import EscalationNotifier
from planbridge.services.repository import StagingRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RetryExhausted(Exception):
    """A submission failed ``max_retry_count`` retries and was escalated."""

    def __init__(self, reference_id: str, retry_count: int) -> None:
        super().__init__(f"retries exhausted for {reference_id} after {retry_count} attempts")
        self.reference_id = reference_id
        self.retry_count = retry_count


class RetryScheduler:
    def __init__(
        self,
        *,
        repository: StagingRepository,
        dispatcher: Dispatcher,
        notifier: EscalationNotifier,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._settings = settings

    async def sweep(
        self,
        *,
        now: datetime | None = None,
        ignore_backoff: bool = False,
        context: ExecutionContext = ExecutionContext.BULK,
    ) -> int:
        """Re-drive due Failed submissions through the Sync Engine. Returns how many were re-queued."""
        current = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("retry.sweep") as span:
            await self._escalate(current)

            claimed = await self._repository.claim_failed_for_retry(
                max_retry_count=self._settings.max_retry_count,
                limit=self._settings.batch_size,
                now=current,
                ignore_backoff=ignore_backoff,
            )
            set_span_attributes(span, {"retry.claimed": len(claimed), "retry.ignore_backoff": ignore_backoff})
            if claimed:
                logger.info("retrying %s failed submissions", len(claimed))
                await self._dispatcher.dispatch(
                    [record.id for record in claimed],
                    context=context,
                    claims={record.id: record.last_attempt_at for record in claimed if record.last_attempt_at},
                )

            await self._escalate(current)
            return len(claimed)

    async def reap_stale(self, *, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        older_than = current - timedelta(seconds=self._settings.processing_timeout_seconds)
        reaped = await self._repository.reap_stale_processing(
            older_than=older_than,
            limit=self._settings.batch_size,
            now=current,
        )
        for record in reaped:
            logger.warning(
                "reaped stale processing submission reference_id=%s last_attempt_at=%s",
                record.reference_id,
                record.last_attempt_at,
            )
        return len(reaped)

    async def _escalate(self, current: datetime) -> int:
        exhausted = await self._repository.claim_exhausted_for_escalation(
            max_retry_count=self._settings.max_retry_count,
            limit=self._settings.batch_size,
            now=current,
        )
        for record in exhausted:
            logger.error("%s", RetryExhausted(record.reference_id, record.retry_count))
            await self._notifier.notify_retry_exhausted(record)
        return len(exhausted)
