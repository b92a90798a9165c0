from __future__ import annotations

import asyncio
import csv
import io
from datetime import datetime, timedelta, timezone

from conftest import FakeProductionSystem, make_pipeline, stage
from planbridge.services.metrics import _sync_rate
from planbridge.services.repository import SubmissionStatus

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_empty_store_returns_zeros(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        return await pipeline.metrics.snapshot(days=7, now=NOW), await pipeline.metrics.health(now=NOW)

    metrics, health = asyncio.run(run())
    assert metrics.total == 0
    assert metrics.sync_rate == 0
    assert metrics.average_sync_seconds == 0.0
    assert metrics.today == metrics.this_week == metrics.this_month == 0
    assert metrics.status_distribution == {"Pending": 0, "Processing": 0, "Synced": 0, "Failed": 0}
    assert len(metrics.buckets) == 8
    assert all(bucket.count == 0 for bucket in metrics.buckets)
    assert health.score == 100
    assert health.status == "Healthy"


async def _seed(pipeline) -> None:
    created = NOW - timedelta(hours=1)
    await stage(pipeline, reference_id="pending", now=created)
    processing = await stage(pipeline, reference_id="processing", now=created)
    synced = await stage(pipeline, reference_id="synced", now=created, name="Lovelace, Ada")
    failed = await stage(pipeline, reference_id="failed", now=created)
    await stage(pipeline, reference_id="old", now=NOW - timedelta(days=40))

    await pipeline.repository.claim_for_sync(processing.id, now=created)
    await pipeline.repository.claim_for_sync(synced.id, now=created)
    await pipeline.repository.mark_synced(synced.id, production_plan_id="plan-1", detail={}, now=NOW)
    await pipeline.repository.claim_for_sync(failed.id, now=created)
    await pipeline.repository.mark_failed(
        failed.id,
        error="production returned 503",
        next_retry_at=NOW,
        detail={},
        now=NOW,
    )


def test_snapshot_counts_are_consistent(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        await _seed(pipeline)
        return await pipeline.metrics.snapshot(days=30, now=NOW)

    metrics = asyncio.run(run())
    assert metrics.total == 4
    assert metrics.total == metrics.pending + metrics.processing + metrics.synced + metrics.failed
    assert (metrics.pending, metrics.processing, metrics.synced, metrics.failed) == (1, 1, 1, 1)
    assert metrics.sync_rate == 25
    assert metrics.average_sync_seconds == 3600.0
    assert metrics.today == 4
    assert metrics.this_week == 4
    assert metrics.this_month == 4
    assert sum(bucket.count for bucket in metrics.buckets) == 4
    assert metrics.buckets[-1].count == 4
    assert metrics.buckets[-1].synced == 1
    assert metrics.buckets[-1].failed == 1


def test_snapshot_without_window_covers_all_records(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        await _seed(pipeline)
        return await pipeline.metrics.snapshot(granularity="month", now=NOW)

    metrics = asyncio.run(run())
    assert metrics.total == 5
    assert metrics.this_month == 4
    assert [bucket.count for bucket in metrics.buckets] == [1, 4]


def test_health_degrades_with_failures(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        await _seed(pipeline)
        return await pipeline.metrics.health(now=NOW)

    health = asyncio.run(run())
    assert health.sync_rate == 50
    assert health.failed_backlog == 1
    assert health.stale_processing == 1
    assert health.score == 100 - 40 - 5 - 5
    assert health.status == "Warning"


def test_list_failed_and_recent_filters(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        await _seed(pipeline)
        failed = await pipeline.metrics.list_failed(now=NOW)
        recent = await pipeline.metrics.list_recent(days=7, limit=2, offset=0, now=NOW)
        pending = await pipeline.metrics.list_recent(status=SubmissionStatus.PENDING, now=NOW)
        return failed, recent, pending

    failed, recent, pending = asyncio.run(run())
    assert [record.reference_id for record in failed] == ["failed"]
    assert len(recent) == 2
    assert [record.reference_id for record in pending] == ["pending", "old"]


def test_csv_export_quotes_values_with_commas(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(production)

    async def run():
        await _seed(pipeline)
        return await pipeline.metrics.export_csv(status=SubmissionStatus.SYNCED, now=NOW)

    content = asyncio.run(run())
    lines = content.splitlines()
    assert lines[0].startswith("Reference ID,Status,Submitted By,Submitter Name")
    assert len(lines) == 2
    assert '"Lovelace, Ada"' in lines[1]
    rows = list(csv.reader(io.StringIO(content)))
    assert rows[1][0] == "synced"
    assert rows[1][3] == "Lovelace, Ada"
    assert rows[1][7] == "plan-1"


def test_sync_rate_rounds_halves_up() -> None:
    assert _sync_rate(1, 8) == 13
    assert _sync_rate(5, 8) == 63
    assert _sync_rate(1, 3) == 33
    assert _sync_rate(2, 3) == 67
    assert _sync_rate(0, 0) == 0
