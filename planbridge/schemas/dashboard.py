from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class MetricsBucketOut(BaseModel):
    start: datetime
    count: int
    synced: int
    failed: int


class DashboardMetricsOut(BaseModel):
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
    granularity: Literal["hour", "day", "week", "month"]
    window_days: int | None = None
    generated_at: datetime
    buckets: list[MetricsBucketOut] = Field(default_factory=list)
    status_distribution: dict[str, int] = Field(default_factory=dict)


class SystemHealthOut(BaseModel):
    score: int
    status: Literal["Healthy", "Warning", "Critical"]
    sync_rate: int
    failed_backlog: int
    retry_exhausted: int
    stale_processing: int
    checked_at: datetime


class SubmissionSummaryOut(BaseModel):
    id: str
    reference_id: str
    status: Literal["Pending", "Processing", "Synced", "Failed"]
    submitter_email: str
    submitter_name: str
    related_record_id: str | None = None
    related_object_type: str
    retry_count: int
    last_error: str | None = None
    production_plan_id: str | None = None
    created_at: datetime
    last_attempt_at: datetime | None = None
    last_synced_at: datetime | None = None
    next_retry_at: datetime | None = None
    escalated_at: datetime | None = None


class SubmissionLogOut(BaseModel):
    id: int
    reference_id: str
    submission_id: str | None = None
    event: str
    detail: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class OperationCountOut(BaseModel):
    count: int
