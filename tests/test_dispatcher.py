from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from conftest import FakeProductionSystem, make_pipeline, stage
from planbridge.services.dispatcher import ExecutionContext, current_execution_context
from planbridge.services.repository import SubmissionStatus

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def test_trigger_path_hands_off_and_returns_immediately(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        receipt = await pipeline.dispatcher.dispatch([record.id])
        status_at_return = (await pipeline.repository.get_submission(record.id)).status
        await pipeline.dispatcher.wait_idle()
        final = await pipeline.repository.get_submission(record.id)
        return receipt, status_at_return, final

    receipt, status_at_return, final = asyncio.run(run())
    assert receipt.handed_off is True
    assert receipt.context is ExecutionContext.FIRE_AND_FORGET
    assert receipt.outcomes == []
    assert status_at_return is SubmissionStatus.PENDING
    assert final.status is SubmissionStatus.SYNCED


def test_trigger_path_uses_bulk_context_for_more_than_one_chunk(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production, batch_size=2)

    async def run():
        ids = [(await stage(pipeline, reference_id=f"ref-{index}", now=NOW)).id for index in range(5)]
        receipt = await pipeline.dispatcher.dispatch(ids)
        await pipeline.dispatcher.wait_idle()
        return receipt, await pipeline.repository.list_submissions_since(None)

    receipt, records = asyncio.run(run())
    assert receipt.context is ExecutionContext.BULK
    assert receipt.submitted == 5
    assert {record.status for record in records} == {SubmissionStatus.SYNCED}
    assert len(production.plans) == 5


def test_asynchronous_context_runs_inline_in_chunks(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production, batch_size=2)

    async def run():
        ids = [(await stage(pipeline, reference_id=f"ref-{index}", now=NOW)).id for index in range(5)]
        receipt = await pipeline.dispatcher.dispatch(ids + ids[:2], context=ExecutionContext.CHAINABLE)
        return ids, receipt

    ids, receipt = asyncio.run(run())
    assert receipt.handed_off is False
    assert receipt.submitted == 5
    assert [outcome.submission_id for outcome in receipt.outcomes] == ids
    assert {outcome.kind for outcome in receipt.outcomes} == {"synced"}
    assert pipeline.dispatcher.in_flight == 0


def test_context_variable_is_honoured_at_dispatch_boundary(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        current_execution_context.set(ExecutionContext.BULK)
        return await pipeline.dispatcher.dispatch([record.id])

    receipt = asyncio.run(run())
    assert receipt.context is ExecutionContext.BULK
    assert receipt.handed_off is False
    assert [outcome.kind for outcome in receipt.outcomes] == ["synced"]


def test_one_failing_record_does_not_abort_the_batch(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        first = await stage(pipeline, reference_id="ref-1", now=NOW)
        second = await stage(pipeline, reference_id="ref-2", now=NOW)
        production.fail_next = 1
        receipt = await pipeline.dispatcher.dispatch(
            [first.id, "missing-id", second.id],
            context=ExecutionContext.BULK,
        )
        return receipt, await pipeline.repository.get_submission(first.id), await pipeline.repository.get_submission(
            second.id
        )

    receipt, first, second = asyncio.run(run())
    assert [outcome.kind for outcome in receipt.outcomes] == ["failed", "failed", "synced"]
    assert first.status is SubmissionStatus.FAILED
    assert second.status is SubmissionStatus.SYNCED


def test_process_pending_only_picks_pending_records(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        synced = await stage(pipeline, reference_id="ref-1", now=NOW)
        await pipeline.sync_engine.sync(synced.id)
        await stage(pipeline, reference_id="ref-2", now=NOW)
        await stage(pipeline, reference_id="ref-3", now=NOW)
        return await pipeline.process_pending(context=ExecutionContext.CHAINABLE)

    receipt = asyncio.run(run())
    assert receipt.submitted == 2
    assert {outcome.kind for outcome in receipt.outcomes} == {"synced"}
    assert len(production.plans) == 3


def test_overlapping_deliveries_do_not_duplicate_production_records(production: FakeProductionSystem) -> None:
    production.latency_seconds = 0.01
    pipeline = make_pipeline(production)

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=NOW)
        handed_off = await pipeline.dispatcher.dispatch([record.id])
        swept, redelivered = await asyncio.gather(
            pipeline.process_pending(context=ExecutionContext.CHAINABLE),
            pipeline.dispatcher.dispatch([record.id], context=ExecutionContext.CHAINABLE),
        )
        await pipeline.dispatcher.wait_idle()
        return handed_off, swept, redelivered, await pipeline.repository.get_submission(record.id)

    handed_off, swept, redelivered, final = asyncio.run(run())
    assert handed_off.handed_off is True
    kinds = [outcome.kind for outcome in swept.outcomes + redelivered.outcomes]
    assert kinds.count("synced") <= 1
    assert final.status is SubmissionStatus.SYNCED
    assert len(production.contacts) == 1
    assert len(production.plans) == 1
