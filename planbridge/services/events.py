from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmissionsStaged:
    submission_ids: tuple[str, ...]


EventHandler = Callable[[SubmissionsStaged], Awaitable[None]]


@dataclass(slots=True)
class _Envelope:
    event: SubmissionsStaged
    attempt: int = 1


class EventBus:
    """In-process at-least-once bus.

    ``publish`` never blocks. A handler that raises causes the event to be
    re-enqueued until ``max_delivery_attempts`` is reached, so subscribers see
    duplicates and re-ordering and must be idempotent.
    """

    def __init__(self, *, max_delivery_attempts: int = 5) -> None:
        self._queue: asyncio.Queue[_Envelope] = asyncio.Queue()
        self._handlers: list[EventHandler] = []
        self._max_delivery_attempts = max(1, max_delivery_attempts)
        self._consumer: asyncio.Task[None] | None = None

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: SubmissionsStaged) -> None:
        self._queue.put_nowait(_Envelope(event=event))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="planbridge-event-bus")

    async def stop(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        """Deliver everything queued, including redeliveries, on the caller's task."""
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            try:
                await self._deliver(envelope)
            finally:
                self._queue.task_done()

    async def _consume(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self._deliver(envelope)
            finally:
                self._queue.task_done()

    async def _deliver(self, envelope: _Envelope) -> None:
        for handler in self._handlers:
            try:
                await handler(envelope.event)
            except Exception:
                if envelope.attempt >= self._max_delivery_attempts:
                    logger.exception(
                        "dropping event after %s delivery attempts: %s",
                        envelope.attempt,
                        envelope.event.submission_ids,
                    )
                    return
                logger.exception(
                    "event handler failed on attempt %s; redelivering %s",
                    envelope.attempt,
                    envelope.event.submission_ids,
                )
                self._queue.put_nowait(_Envelope(event=envelope.event, attempt=envelope.attempt + 1))
                return


class EventNotifier:
    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    def notify(self, submission_id: str) -> None:
        self._bus.publish(SubmissionsStaged(submission_ids=(submission_id,)))
