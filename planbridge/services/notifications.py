from __future__ import annotations

import logging

import httpx

from planbridge.services.repository import SubmissionRecord

logger = logging.getLogger(__name__)


class EscalationNotifier:
    def __init__(
        self,
        *,
        recipient: str | None = None,
        webhook_url: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._recipient = recipient
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def notify_retry_exhausted(self, record: SubmissionRecord) -> bool:
        """Report a submission that ran out of retries. Returns whether the webhook accepted it."""
        logger.warning(
            "retry exhausted for reference_id=%s retry_count=%s recipient=%s last_error=%s",
            record.reference_id,
            record.retry_count,
            self._recipient or "-",
            record.last_error,
        )
        if not self._webhook_url:
            return False

        payload = {
            "event": "retry_exhausted",
            "recipient": self._recipient,
            "reference_id": record.reference_id,
            "submission_id": record.id,
            "retry_count": record.retry_count,
            "last_error": record.last_error,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(self._webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("escalation webhook failed for reference_id=%s: %s", record.reference_id, exc)
            return False
        return True
