from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from planbridge.core.security import get_operator_principal
from planbridge.schemas.dashboard import (
    DashboardMetricsOut,
    MetricsBucketOut,
    SubmissionLogOut,
    SubmissionSummaryOut,
    SystemHealthOut,
)
from planbridge.services.pipeline import get_pipeline
from planbridge.services.repository import RepositoryUnavailableError, SubmissionRecord, SubmissionStatus

router = APIRouter()

StatusFilter = Literal["Pending", "Processing", "Synced", "Failed"]


def _require_dashboard_read(principal) -> None:
    try:
        principal.require_scopes({"dashboard:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("/metrics", response_model=DashboardMetricsOut)
async def get_metrics(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
    days: int | None = Query(default=None, ge=1, le=365),
    granularity: Literal["hour", "day", "week", "month"] = Query(default="day"),
) -> DashboardMetricsOut:
    _require_dashboard_read(principal)
    try:
        metrics = await pipeline.metrics.snapshot(days=days, granularity=granularity)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DashboardMetricsOut(
        total=metrics.total,
        pending=metrics.pending,
        processing=metrics.processing,
        synced=metrics.synced,
        failed=metrics.failed,
        retry_exhausted=metrics.retry_exhausted,
        sync_rate=metrics.sync_rate,
        average_sync_seconds=metrics.average_sync_seconds,
        today=metrics.today,
        this_week=metrics.this_week,
        this_month=metrics.this_month,
        granularity=metrics.granularity,
        window_days=metrics.window_days,
        generated_at=metrics.generated_at,
        buckets=[
            MetricsBucketOut(start=bucket.start, count=bucket.count, synced=bucket.synced, failed=bucket.failed)
            for bucket in metrics.buckets
        ],
        status_distribution=metrics.status_distribution,
    )


@router.get("/health", response_model=SystemHealthOut)
async def get_system_health(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
) -> SystemHealthOut:
    _require_dashboard_read(principal)
    try:
        health = await pipeline.metrics.health()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SystemHealthOut(
        score=health.score,
        status=health.status,
        sync_rate=health.sync_rate,
        failed_backlog=health.failed_backlog,
        retry_exhausted=health.retry_exhausted,
        stale_processing=health.stale_processing,
        checked_at=health.checked_at,
    )


@router.get("/submissions", response_model=list[SubmissionSummaryOut])
async def list_submissions(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
    submission_status: StatusFilter | None = Query(default=None, alias="status"),
    days: int | None = Query(default=None, ge=1, le=365),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SubmissionSummaryOut]:
    _require_dashboard_read(principal)
    try:
        rows = await pipeline.metrics.list_recent(
            status=SubmissionStatus(submission_status) if submission_status else None,
            days=days,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_summary(row) for row in rows]


@router.get("/submissions/failed", response_model=list[SubmissionSummaryOut])
async def list_failed_submissions(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
    days: int | None = Query(default=None, ge=1, le=365),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SubmissionSummaryOut]:
    _require_dashboard_read(principal)
    try:
        rows = await pipeline.metrics.list_failed(days=days, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_summary(row) for row in rows]


@router.get("/submissions/export")
async def export_submissions(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
    submission_status: StatusFilter | None = Query(default=None, alias="status"),
    days: int | None = Query(default=None, ge=1, le=365),
) -> Response:
    _require_dashboard_read(principal)
    try:
        content = await pipeline.metrics.export_csv(
            status=SubmissionStatus(submission_status) if submission_status else None,
            days=days,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    filename = f"action-plans-{datetime.now(timezone.utc):%Y%m%d%H%M%S}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/submissions/{reference_id}/logs", response_model=list[SubmissionLogOut])
async def list_submission_logs(
    reference_id: str,
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[SubmissionLogOut]:
    _require_dashboard_read(principal)
    try:
        rows = await pipeline.repository.list_logs(reference_id=reference_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [
        SubmissionLogOut(
            id=row.id,
            reference_id=row.reference_id,
            submission_id=row.submission_id,
            event=row.event,
            detail=row.detail,
            created_at=row.created_at,
        )
        for row in rows
    ]


def _summary(record: SubmissionRecord) -> SubmissionSummaryOut:
    return SubmissionSummaryOut(
        id=record.id,
        reference_id=record.reference_id,
        status=record.status.value,
        submitter_email=record.submitter_email,
        submitter_name=record.submitter_name,
        related_record_id=record.related_record_id,
        related_object_type=record.related_object_type,
        retry_count=record.retry_count,
        last_error=record.last_error,
        production_plan_id=record.production_plan_id,
        created_at=record.created_at,
        last_attempt_at=record.last_attempt_at,
        last_synced_at=record.last_synced_at,
        next_retry_at=record.next_retry_at,
        escalated_at=record.escalated_at,
    )
