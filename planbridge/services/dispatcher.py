from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from opentelemetry import trace

from planbridge.core.config import Settings
from planbridge.core.telemetry import set_span_attributes
from planbridge.services.events import SubmissionsStaged
from planbridge.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    StagingRepository,
    SubmissionStatus,
)
from planbridge.services.sync_engine import SyncEngine, SyncOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ExecutionContext(str, Enum):
    SYNCHRONOUS_TRIGGER = "synchronous_trigger"
    FIRE_AND_FORGET = "fire_and_forget"
    CHAINABLE = "chainable"
    BULK = "bulk"


current_execution_context: ContextVar[ExecutionContext] = ContextVar(
    "planbridge_execution_context",
    default=ExecutionContext.SYNCHRONOUS_TRIGGER,
)


@dataclass(slots=True)
class DispatchReceipt:
    context: ExecutionContext
    submitted: int
    outcomes: list[SyncOutcome] = field(default_factory=list)
    handed_off: bool = False


class Dispatcher:
    """Routes sync work into an asynchronous execution context.

    From the synchronous trigger path the work is handed to a tracked
    background task and the call returns immediately. From any asynchronous
    context the Sync Engine runs inline, chunk by chunk, one record at a time.
    """

    def __init__(
        self,
        *,
        repository: StagingRepository,
        sync_engine: SyncEngine,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._sync_engine = sync_engine
        self._batch_size = max(1, settings.batch_size)
        self._pending_sweep_limit = max(1, settings.pending_sweep_limit)
        self._background: set[asyncio.Task[DispatchReceipt]] = set()

    async def handle_event(self, event: SubmissionsStaged) -> None:
        await self.dispatch(event.submission_ids)

    async def dispatch(
        self,
        submission_ids: Iterable[str],
        *,
        context: ExecutionContext | None = None,
        claims: Mapping[str, datetime] | None = None,
    ) -> DispatchReceipt:
        """Sync ``submission_ids`` in the current execution context.

        ``claims`` maps ids the caller already moved to Processing onto the
        ``last_attempt_at`` stamp of that claim.
        """
        ids = list(dict.fromkeys(submission_id for submission_id in submission_ids if submission_id))
        active = context or current_execution_context.get()
        claimed = dict(claims or {})
        if not ids:
            return DispatchReceipt(context=active, submitted=0)

        if active is ExecutionContext.SYNCHRONOUS_TRIGGER:
            target = ExecutionContext.FIRE_AND_FORGET if len(ids) <= self._batch_size else ExecutionContext.BULK
            self._hand_off(ids, target, claimed)
            return DispatchReceipt(context=target, submitted=len(ids), handed_off=True)

        outcomes = await self._run(ids, active, claimed)
        return DispatchReceipt(context=active, submitted=len(ids), outcomes=outcomes)

    async def process_pending(self, *, context: ExecutionContext | None = None) -> DispatchReceipt:
        ids = await self._repository.list_submission_ids(
            status=SubmissionStatus.PENDING,
            limit=self._pending_sweep_limit,
        )
        if ids:
            logger.info("processing %s pending submissions", len(ids))
        return await self.dispatch(ids, context=context)

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()

    @property
    def in_flight(self) -> int:
        return len(self._background)

    def _hand_off(self, ids: list[str], context: ExecutionContext, claims: dict[str, datetime]) -> None:
        task = asyncio.create_task(
            self._run_in_context(ids, context, claims),
            name=f"planbridge-dispatch-{context.value}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_in_context(
        self,
        ids: list[str],
        context: ExecutionContext,
        claims: dict[str, datetime],
    ) -> DispatchReceipt:
        current_execution_context.set(context)
        try:
            outcomes = await self._run(ids, context, claims)
        except Exception:
            logger.exception("background dispatch failed context=%s ids=%s", context.value, len(ids))
            raise
        return DispatchReceipt(context=context, submitted=len(ids), outcomes=outcomes)

    async def _run(
        self,
        ids: list[str],
        context: ExecutionContext,
        claims: dict[str, datetime],
    ) -> list[SyncOutcome]:
        outcomes: list[SyncOutcome] = []
        for start in range(0, len(ids), self._batch_size):
            chunk = ids[start : start + self._batch_size]
            with tracer.start_as_current_span("dispatch.chunk") as span:
                set_span_attributes(span, {"dispatch.context": context.value, "dispatch.chunk_size": len(chunk)})
                for submission_id in chunk:
                    outcomes.append(await self._process_one(submission_id, context, claims.get(submission_id)))

        synced = sum(1 for outcome in outcomes if outcome.kind == "synced")
        failed = sum(1 for outcome in outcomes if outcome.kind == "failed")
        logger.info(
            "dispatch finished context=%s submitted=%s synced=%s failed=%s",
            context.value,
            len(ids),
            synced,
            failed,
        )
        return outcomes

    async def _process_one(
        self,
        submission_id: str,
        context: ExecutionContext,
        claimed_at: datetime | None,
    ) -> SyncOutcome:
        try:
            await self._record_dispatch(submission_id, context, claimed_at)
            return await self._sync_engine.sync(submission_id, claimed_at=claimed_at)
        except Exception as exc:
            logger.exception("dispatch of submission id=%s failed", submission_id)
            return SyncOutcome(submission_id=submission_id, kind="failed", error=str(exc))

    async def _record_dispatch(
        self,
        submission_id: str,
        context: ExecutionContext,
        claimed_at: datetime | None,
    ) -> None:
        try:
            record = await self._repository.get_submission(submission_id)
        except RepositoryNotFoundError:
            return
        if record.status is SubmissionStatus.PROCESSING and claimed_at is None:
            return
        if record.status not in {SubmissionStatus.PENDING, SubmissionStatus.PROCESSING}:
            return
        try:
            await self._repository.append_log(
                reference_id=record.reference_id,
                submission_id=record.id,
                event="dispatched",
                detail={"context": context.value},
                now=datetime.now(timezone.utc),
            )
        except RepositoryError:
            logger.warning("could not write dispatch log for reference_id=%s", record.reference_id)
