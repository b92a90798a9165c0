from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from planbridge.core.config import Settings
from planbridge.services.repository import StagingRepository, SubmissionRecord, SubmissionStatus

Granularity = Literal["hour", "day", "week", "month"]
HealthStatus = Literal["Healthy", "Warning", "Critical"]

HEALTH_WINDOW_DAYS = 7
MAX_BUCKETS = 1000
CSV_COLUMNS = (
    "Reference ID",
    "Status",
    "Submitted By",
    "Submitter Name",
    "Submission Date",
    "Last Synced",
    "Retry Count",
    "Production Plan ID",
    "Last Error",
)


@dataclass(slots=True)
class MetricsBucket:
    start: datetime
    count: int = 0
    synced: int = 0
    failed: int = 0


@dataclass(slots=True)
class DashboardMetrics:
    total: int
    pending: int
    processing: int
    synced: int
    failed: int
    retry_exhausted: int
    sync_rate: int
    average_sync_seconds: float
    today: int
    this_week: int
    this_month: int
    granularity: Granularity
    generated_at: datetime
    window_days: int | None = None
    buckets: list[MetricsBucket] = field(default_factory=list)
    status_distribution: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class SystemHealth:
    score: int
    status: HealthStatus
    sync_rate: int
    failed_backlog: int
    retry_exhausted: int
    stale_processing: int
    checked_at: datetime


class MetricsAggregator:
    """Read-only dashboard model over the staging store; never mutates anything."""

    def __init__(self, *, repository: StagingRepository, settings: Settings) -> None:
        self._repository = repository
        self._settings = settings

    async def snapshot(
        self,
        *,
        days: int | None = None,
        granularity: Granularity = "day",
        now: datetime | None = None,
    ) -> DashboardMetrics:
        current = now or datetime.now(timezone.utc)
        window_start = current - timedelta(days=days) if days else None
        month_start = _floor(current, "month")
        load_since = min(window_start, month_start) if window_start else None
        records = await self._repository.list_submissions_since(load_since)

        in_window = [record for record in records if window_start is None or record.created_at >= window_start]
        counts = _status_counts(in_window)
        total = len(in_window)
        synced_durations = [
            (record.last_synced_at - record.created_at).total_seconds()
            for record in in_window
            if record.status is SubmissionStatus.SYNCED and record.last_synced_at is not None
        ]

        today_start = _floor(current, "day")
        week_start = _floor(current, "week")

        return DashboardMetrics(
            total=total,
            pending=counts[SubmissionStatus.PENDING.value],
            processing=counts[SubmissionStatus.PROCESSING.value],
            synced=counts[SubmissionStatus.SYNCED.value],
            failed=counts[SubmissionStatus.FAILED.value],
            retry_exhausted=sum(1 for record in in_window if self._is_exhausted(record)),
            sync_rate=_sync_rate(counts[SubmissionStatus.SYNCED.value], total),
            average_sync_seconds=(
                round(sum(synced_durations) / len(synced_durations), 1) if synced_durations else 0.0
            ),
            today=sum(1 for record in records if today_start <= record.created_at <= current),
            this_week=sum(1 for record in records if week_start <= record.created_at <= current),
            this_month=sum(1 for record in records if month_start <= record.created_at <= current),
            granularity=granularity,
            generated_at=current,
            window_days=days,
            buckets=_bucketize(in_window, granularity, window_start, current),
            status_distribution=counts,
        )

    async def health(self, *, now: datetime | None = None) -> SystemHealth:
        current = now or datetime.now(timezone.utc)
        records = await self._repository.list_submissions_since(current - timedelta(days=HEALTH_WINDOW_DAYS))
        counts = _status_counts(records)
        stale_cutoff = current - timedelta(seconds=self._settings.processing_timeout_seconds)

        failed_backlog = counts[SubmissionStatus.FAILED.value]
        exhausted = sum(1 for record in records if self._is_exhausted(record))
        stale = sum(
            1
            for record in records
            if record.status is SubmissionStatus.PROCESSING
            and (record.last_attempt_at or record.created_at) <= stale_cutoff
        )
        completed = counts[SubmissionStatus.SYNCED.value] + failed_backlog
        sync_rate = _sync_rate(counts[SubmissionStatus.SYNCED.value], completed) if completed else 100

        score = 100
        score -= min(40, max(0, 95 - sync_rate))
        score -= min(30, failed_backlog * 5)
        score -= min(20, exhausted * 10)
        score -= min(10, stale * 5)
        score = max(0, score)

        status: HealthStatus
        if score >= 80:
            status = "Healthy"
        elif score >= 50:
            status = "Warning"
        else:
            status = "Critical"

        return SystemHealth(
            score=score,
            status=status,
            sync_rate=sync_rate,
            failed_backlog=failed_backlog,
            retry_exhausted=exhausted,
            stale_processing=stale,
            checked_at=current,
        )

    async def list_recent(
        self,
        *,
        status: SubmissionStatus | None = None,
        days: int | None = None,
        limit: int = 50,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[SubmissionRecord]:
        current = now or datetime.now(timezone.utc)
        return await self._repository.list_submissions(
            status=status,
            since=current - timedelta(days=days) if days else None,
            limit=max(1, limit),
            offset=max(0, offset),
        )

    async def list_failed(
        self,
        *,
        days: int | None = None,
        limit: int = 50,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[SubmissionRecord]:
        return await self.list_recent(
            status=SubmissionStatus.FAILED,
            days=days,
            limit=limit,
            offset=offset,
            now=now,
        )

    async def export_csv(
        self,
        *,
        status: SubmissionStatus | None = None,
        days: int | None = None,
        now: datetime | None = None,
    ) -> str:
        current = now or datetime.now(timezone.utc)
        records = await self._repository.list_submissions_since(current - timedelta(days=days) if days else None)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for record in sorted(records, key=lambda item: item.created_at, reverse=True):
            if status is not None and record.status is not status:
                continue
            writer.writerow(
                (
                    record.reference_id,
                    record.status.value,
                    record.submitter_email,
                    record.submitter_name,
                    record.created_at.isoformat(),
                    record.last_synced_at.isoformat() if record.last_synced_at else "",
                    record.retry_count,
                    record.production_plan_id or "",
                    record.last_error or "",
                )
            )
        return buffer.getvalue()

    def _is_exhausted(self, record: SubmissionRecord) -> bool:
        return record.status is SubmissionStatus.FAILED and record.retry_count >= self._settings.max_retry_count


def _status_counts(records: list[SubmissionRecord]) -> dict[str, int]:
    counts = {status.value: 0 for status in SubmissionStatus}
    for record in records:
        counts[record.status.value] += 1
    return counts


def _sync_rate(synced: int, total: int) -> int:
    if total <= 0:
        return 0
    # Halves round up.
    return (synced * 200 + total) // (2 * total)


def _floor(value: datetime, granularity: Granularity) -> datetime:
    value = value.astimezone(timezone.utc)
    if granularity == "hour":
        return value.replace(minute=0, second=0, microsecond=0)
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def _next_bucket(start: datetime, granularity: Granularity) -> datetime:
    if granularity == "hour":
        return start + timedelta(hours=1)
    if granularity == "day":
        return start + timedelta(days=1)
    if granularity == "week":
        return start + timedelta(weeks=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _bucketize(
    records: list[SubmissionRecord],
    granularity: Granularity,
    window_start: datetime | None,
    current: datetime,
) -> list[MetricsBucket]:
    if window_start is None:
        if not records:
            return []
        window_start = min(record.created_at for record in records)

    buckets: dict[datetime, MetricsBucket] = {}
    cursor = _floor(window_start, granularity)
    last = _floor(current, granularity)
    while cursor <= last:
        buckets[cursor] = MetricsBucket(start=cursor)
        cursor = _next_bucket(cursor, granularity)

    for record in records:
        bucket = buckets.get(_floor(record.created_at, granularity))
        if bucket is None:
            continue
        bucket.count += 1
        if record.status is SubmissionStatus.SYNCED:
            bucket.synced += 1
        elif record.status is SubmissionStatus.FAILED:
            bucket.failed += 1

    ordered = list(buckets.values())
    return ordered[-MAX_BUCKETS:]
