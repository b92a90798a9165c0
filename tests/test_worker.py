from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from conftest import FakeProductionSystem, make_pipeline, stage
from planbridge.services.repository import SubmissionStatus
from planbridge.worker import WorkerSchedule, run_cycle


def test_run_cycle_runs_due_passes_then_waits_for_interval(production: FakeProductionSystem) -> None:
    pipeline = make_pipeline(
        production,
        reaper_interval_seconds=120,
        pending_sweep_interval_seconds=60,
        retry_sweep_interval_seconds=300,
    )
    schedule = WorkerSchedule()

    async def run():
        record = await stage(pipeline, reference_id="ref-1", now=datetime.now(timezone.utc))
        first = await run_cycle(pipeline, pipeline.settings, schedule, now=1000.0)
        second = await run_cycle(pipeline, pipeline.settings, schedule, now=1030.0)
        third = await run_cycle(pipeline, pipeline.settings, schedule, now=1061.0)
        return first, second, third, await pipeline.repository.get_submission(record.id)

    first, second, third, record = asyncio.run(run())
    assert first == {"reaped": 0, "pending": 1, "retried": 0}
    assert second == {}
    assert third == {"pending": 0}
    assert record.status is SubmissionStatus.SYNCED
