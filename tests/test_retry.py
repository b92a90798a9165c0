from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from conftest import FakeProductionSystem, WebhookRecorder, make_pipeline, stage, submission_payload
from planbridge.services.notifications import EscalationNotifier
from planbridge.services.repository import REAPED_ERROR_MESSAGE, SubmissionStatus
from planbridge.services.sync_engine import compute_retry_delay_seconds

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def test_retry_delay_doubles_and_caps() -> None:
    assert compute_retry_delay_seconds(0, base_seconds=60, max_seconds=3600) == 60
    assert compute_retry_delay_seconds(1, base_seconds=60, max_seconds=3600) == 120
    assert compute_retry_delay_seconds(2, base_seconds=60, max_seconds=3600) == 240
    assert compute_retry_delay_seconds(10, base_seconds=60, max_seconds=3600) == 3600
    assert compute_retry_delay_seconds(3, base_seconds=0, max_seconds=3600) == 0


def test_failure_then_success_ends_synced_with_one_retry(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        accepted = await pipeline.intake.accept(submission_payload(), now=NOW)
        production.fail_next = 1
        await pipeline.drain()
        failed = await pipeline.repository.get_submission(accepted.submission_id)
        requeued = await pipeline.retry.sweep()
        final = await pipeline.repository.get_submission(accepted.submission_id)
        logs = await pipeline.repository.list_logs(reference_id=accepted.reference_id, limit=20, offset=0)
        return failed, requeued, final, logs

    failed, requeued, final, logs = asyncio.run(run())
    assert failed.status is SubmissionStatus.FAILED
    assert requeued == 1
    assert final.status is SubmissionStatus.SYNCED
    assert final.retry_count == 1
    assert len(production.plans) == 1
    assert [entry.event for entry in logs] == [
        "received",
        "dispatched",
        "sync-failed",
        "retried",
        "dispatched",
        "synced",
    ]


def test_partial_failure_is_recovered_without_duplicate_plan(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW, task_count=3)
        production.fail_task_after = 1
        first = await pipeline.sync_engine.sync(record.id)
        await pipeline.retry.sweep()
        return first, await pipeline.repository.get_submission(record.id)

    first, final = asyncio.run(run())
    assert first.kind == "failed"
    assert final.status is SubmissionStatus.SYNCED
    assert len(production.plans) == 1
    assert [task["position"] for task in production.tasks[production.plans[0]["id"]]] == [0, 1, 2]


def test_retries_are_bounded_and_escalated_exactly_once(
    production: FakeProductionSystem,
    webhook: WebhookRecorder,
) -> None:
    production.fail_next = 1000
    pipeline = make_pipeline(production, webhook, max_retry_count=3, notification_recipient="ops@example.com")

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        await pipeline.sync_engine.sync(record.id)
        requeued = [await pipeline.retry.sweep() for _ in range(6)]
        final = await pipeline.repository.get_submission(record.id)
        logs = await pipeline.repository.list_logs(reference_id="ref-1", limit=50, offset=0)
        return requeued, final, logs

    requeued, final, logs = asyncio.run(run())
    assert requeued == [1, 1, 1, 0, 0, 0]
    assert final.status is SubmissionStatus.FAILED
    assert final.retry_count == 3
    assert final.escalated_at is not None
    assert [entry.event for entry in logs].count("retry-exhausted") == 1
    assert len(webhook.payloads) == 1
    assert webhook.payloads[0]["event"] == "retry_exhausted"
    assert webhook.payloads[0]["reference_id"] == "ref-1"
    assert webhook.payloads[0]["recipient"] == "ops@example.com"
    assert webhook.payloads[0]["retry_count"] == 3


def test_backoff_delays_retry_until_due(production: FakeProductionSystem) -> None:
    production.fail_next = 1
    pipeline = make_pipeline(production, retry_base_seconds=600)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        await pipeline.sync_engine.sync(record.id)
        early = await pipeline.retry.sweep()
        later = await pipeline.retry.sweep(now=datetime.now(timezone.utc) + timedelta(seconds=601))
        return early, later, await pipeline.repository.get_submission(record.id)

    early, later, final = asyncio.run(run())
    assert early == 0
    assert later == 1
    assert final.status is SubmissionStatus.SYNCED


def test_manual_retry_ignores_backoff(production: FakeProductionSystem) -> None:
    production.fail_next = 1
    pipeline = make_pipeline(production, retry_base_seconds=600)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        await pipeline.sync_engine.sync(record.id)
        return await pipeline.retry.sweep(ignore_backoff=True)

    assert asyncio.run(run()) == 1


def test_stale_processing_records_are_reaped_and_retried(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production, processing_timeout_seconds=900)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        await pipeline.repository.claim_for_sync(record.id, now=NOW)
        fresh = await pipeline.retry.reap_stale(now=NOW + timedelta(seconds=60))
        reaped = await pipeline.retry.reap_stale(now=NOW + timedelta(seconds=901))
        stored = await pipeline.repository.get_submission(record.id)
        logs = await pipeline.repository.list_logs(reference_id="ref-1", limit=10, offset=0)
        requeued = await pipeline.retry.sweep(now=NOW + timedelta(seconds=901))
        final = await pipeline.repository.get_submission(record.id)
        return fresh, reaped, stored, logs, requeued, final

    fresh, reaped, stored, logs, requeued, final = asyncio.run(run())
    assert fresh == 0
    assert reaped == 1
    assert stored.status is SubmissionStatus.FAILED
    assert stored.last_error == REAPED_ERROR_MESSAGE
    assert logs[-1].event == "reaped"
    assert requeued == 1
    assert final.status is SubmissionStatus.SYNCED


def test_escalation_webhook_failure_is_logged_not_raised(production: FakeProductionSystem) -> None:
    failing = WebhookRecorder(status_code=500)
    notifier = EscalationNotifier(webhook_url="http://hooks.test/escalations", transport=failing.transport())

    async def run():
        pipeline = make_pipeline(production)
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        return await notifier.notify_retry_exhausted(record)

    assert asyncio.run(run()) is False
    assert len(failing.payloads) == 1
