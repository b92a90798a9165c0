from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time

from opentelemetry import trace

from planbridge.core.config import Settings, get_settings
from planbridge.core.telemetry import configure_logging, set_span_attributes, setup_telemetry, shutdown_telemetry
from planbridge.services.dispatcher import ExecutionContext
from planbridge.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class WorkerSchedule:
    last_reap_at: float = float("-inf")
    last_pending_sweep_at: float = float("-inf")
    last_retry_sweep_at: float = float("-inf")


async def run_cycle(pipeline: Pipeline, settings: Settings, schedule: WorkerSchedule, now: float) -> dict[str, int]:
    """Run whichever maintenance passes are due at monotonic time ``now``."""
    counts: dict[str, int] = {}

    if now - schedule.last_reap_at >= settings.reaper_interval_seconds:
        reaped = await pipeline.retry.reap_stale()
        if reaped:
            logger.info("reaped stale processing submissions: %s", reaped)
        counts["reaped"] = reaped
        schedule.last_reap_at = now

    if now - schedule.last_pending_sweep_at >= settings.pending_sweep_interval_seconds:
        receipt = await pipeline.process_pending(context=ExecutionContext.CHAINABLE)
        if receipt.submitted:
            logger.info("processed pending submissions: %s", receipt.submitted)
        counts["pending"] = receipt.submitted
        schedule.last_pending_sweep_at = now

    if now - schedule.last_retry_sweep_at >= settings.retry_sweep_interval_seconds:
        retried = await pipeline.retry.sweep()
        if retried:
            logger.info("re-queued failed submissions: %s", retried)
        counts["retried"] = retried
        schedule.last_retry_sweep_at = now

    return counts


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    pipeline = get_pipeline()
    schedule = WorkerSchedule()

    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    counts = await run_cycle(pipeline, settings, schedule, time.monotonic())
                    set_span_attributes(span, {f"worker.{name}": value for name, value in counts.items()})
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await pipeline.aclose()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
