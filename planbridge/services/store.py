from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from itertools import count
from typing import Any
from uuid import uuid4

from planbridge.services.repository import (
    LOG_EVENTS,
    REAPED_ERROR_MESSAGE,
    LogEvent,
    RateLimitWindow,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryRateLimitedError,
    RepositoryValidationError,
    SubmissionDraft,
    SubmissionLogRecord,
    SubmissionRecord,
    SubmissionStatus,
    TaskRecord,
)


class InMemoryRepository:
    """Process-local staging store for local development and tests.

    A single ``asyncio.Lock`` serializes every mutation, which gives the same
    atomicity guarantees the Postgres implementation gets from transactions and
    row locks. Records handed out are copies; callers never alias stored state.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._submissions: dict[str, SubmissionRecord] = {}
        self._reference_index: dict[str, str] = {}
        self._tasks: dict[str, list[TaskRecord]] = {}
        self._logs: list[SubmissionLogRecord] = []
        self._rate_limit_counters: dict[tuple[str, str], int] = {}
        self._log_ids = count(1)

    async def close(self) -> None:
        return None

    async def stage_submission(
        self,
        draft: SubmissionDraft,
        *,
        rate_limit: RateLimitWindow,
        now: datetime,
    ) -> SubmissionRecord:
        async with self._lock:
            counter_key = (rate_limit.identity, rate_limit.bucket)
            current = self._rate_limit_counters.get(counter_key, 0)
            if current >= rate_limit.ceiling:
                raise RepositoryRateLimitedError(
                    f"rate limit of {rate_limit.ceiling} submissions per hour reached"
                )
            if draft.reference_id in self._reference_index:
                raise RepositoryConflictError("reference id already exists")

            submission_id = str(uuid4())
            record = SubmissionRecord(
                id=submission_id,
                reference_id=draft.reference_id,
                submitter_email=draft.submitter_email,
                submitter_name=draft.submitter_name,
                related_record_id=draft.related_record_id,
                related_object_type=draft.related_object_type,
                status=SubmissionStatus.PENDING,
                created_at=now,
                ip_address=draft.ip_address,
                user_agent=draft.user_agent,
                session_id=draft.session_id,
            )
            self._rate_limit_counters[counter_key] = current + 1
            self._submissions[submission_id] = record
            self._reference_index[draft.reference_id] = submission_id
            self._tasks[submission_id] = [
                TaskRecord(
                    id=str(uuid4()),
                    submission_id=submission_id,
                    position=position,
                    name=task.name,
                    description=task.description,
                    due_date_offset_days=task.due_date_offset_days,
                    priority=task.priority,
                    category=task.category,
                    required=task.required,
                    reminder_lead_days=task.reminder_lead_days,
                    assignee_email=task.assignee_email,
                )
                for position, task in enumerate(draft.tasks)
            ]
            self._write_log(
                reference_id=draft.reference_id,
                submission_id=submission_id,
                event="received",
                detail={"task_count": len(draft.tasks), "hour_bucket": rate_limit.bucket},
                now=now,
            )
            return replace(record)

    async def get_submission(self, submission_id: str) -> SubmissionRecord:
        record = self._submissions.get(submission_id)
        if record is None:
            raise RepositoryNotFoundError("submission not found")
        return replace(record)

    async def get_submission_by_reference(self, reference_id: str) -> SubmissionRecord | None:
        submission_id = self._reference_index.get(reference_id)
        if submission_id is None:
            return None
        return replace(self._submissions[submission_id])

    async def list_tasks(self, submission_id: str) -> list[TaskRecord]:
        return [replace(task) for task in self._tasks.get(submission_id, [])]

    async def claim_for_sync(self, submission_id: str, *, now: datetime) -> tuple[SubmissionRecord, bool]:
        async with self._lock:
            record = self._require(submission_id)
            if record.status is not SubmissionStatus.PENDING:
                return replace(record), False
            record.status = SubmissionStatus.PROCESSING
            record.last_attempt_at = now
            return replace(record), True

    async def mark_synced(
        self,
        submission_id: str,
        *,
        production_plan_id: str,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord:
        async with self._lock:
            record = self._require(submission_id)
            if record.status is not SubmissionStatus.PROCESSING:
                raise RepositoryConflictError("submission is not in Processing state")
            record.status = SubmissionStatus.SYNCED
            record.production_plan_id = production_plan_id
            record.last_synced_at = now
            record.last_error = None
            record.next_retry_at = None
            self._write_log(
                reference_id=record.reference_id,
                submission_id=record.id,
                event="synced",
                detail=detail,
                now=now,
            )
            return replace(record)

    async def mark_failed(
        self,
        submission_id: str,
        *,
        error: str,
        next_retry_at: datetime | None,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord:
        async with self._lock:
            record = self._require(submission_id)
            if record.status is not SubmissionStatus.PROCESSING:
                raise RepositoryConflictError("submission is not in Processing state")
            record.status = SubmissionStatus.FAILED
            record.last_error = error
            record.next_retry_at = next_retry_at
            self._write_log(
                reference_id=record.reference_id,
                submission_id=record.id,
                event="sync-failed",
                detail={"error": error, **detail},
                now=now,
            )
            return replace(record)

    async def claim_failed_for_retry(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
        ignore_backoff: bool = False,
    ) -> list[SubmissionRecord]:
        async with self._lock:
            due = [
                record
                for record in self._submissions.values()
                if record.status is SubmissionStatus.FAILED
                and record.retry_count < max_retry_count
                and (ignore_backoff or record.next_retry_at is None or record.next_retry_at <= now)
            ]
            due.sort(key=lambda record: (record.last_attempt_at or record.created_at, record.created_at, record.id))

            claimed: list[SubmissionRecord] = []
            for record in due[: max(1, limit)]:
                record.status = SubmissionStatus.PROCESSING
                record.retry_count += 1
                record.last_attempt_at = now
                record.next_retry_at = None
                self._write_log(
                    reference_id=record.reference_id,
                    submission_id=record.id,
                    event="retried",
                    detail={"retry_count": record.retry_count, "max_retry_count": max_retry_count},
                    now=now,
                )
                claimed.append(replace(record))
            return claimed

    async def claim_exhausted_for_escalation(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]:
        async with self._lock:
            exhausted = sorted(
                (
                    record
                    for record in self._submissions.values()
                    if record.status is SubmissionStatus.FAILED
                    and record.retry_count >= max_retry_count
                    and record.escalated_at is None
                ),
                key=lambda record: record.created_at,
            )
            claimed: list[SubmissionRecord] = []
            for record in exhausted[: max(1, limit)]:
                record.escalated_at = now
                self._write_log(
                    reference_id=record.reference_id,
                    submission_id=record.id,
                    event="retry-exhausted",
                    detail={
                        "retry_count": record.retry_count,
                        "max_retry_count": max_retry_count,
                        "last_error": record.last_error,
                    },
                    now=now,
                )
                claimed.append(replace(record))
            return claimed

    async def reap_stale_processing(
        self,
        *,
        older_than: datetime,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]:
        async with self._lock:
            stale = sorted(
                (
                    record
                    for record in self._submissions.values()
                    if record.status is SubmissionStatus.PROCESSING
                    and (record.last_attempt_at or record.created_at) <= older_than
                ),
                key=lambda record: record.last_attempt_at or record.created_at,
            )
            reaped: list[SubmissionRecord] = []
            for record in stale[: max(1, limit)]:
                record.status = SubmissionStatus.FAILED
                record.last_error = REAPED_ERROR_MESSAGE
                record.next_retry_at = now
                self._write_log(
                    reference_id=record.reference_id,
                    submission_id=record.id,
                    event="reaped",
                    detail={"reason": "processing_timeout"},
                    now=now,
                )
                reaped.append(replace(record))
            return reaped

    async def list_submission_ids(self, *, status: SubmissionStatus, limit: int) -> list[str]:
        matching = sorted(
            (record for record in self._submissions.values() if record.status is status),
            key=lambda record: record.created_at,
        )
        return [record.id for record in matching[: max(1, limit)]]

    async def list_submissions(
        self,
        *,
        status: SubmissionStatus | None,
        since: datetime | None,
        limit: int,
        offset: int,
    ) -> list[SubmissionRecord]:
        rows = [
            record
            for record in self._submissions.values()
            if (status is None or record.status is status) and (since is None or record.created_at >= since)
        ]
        rows.sort(key=lambda record: (record.created_at, record.id), reverse=True)
        return [replace(record) for record in rows[offset : offset + limit]]

    async def list_submissions_since(self, since: datetime | None) -> list[SubmissionRecord]:
        rows = [record for record in self._submissions.values() if since is None or record.created_at >= since]
        rows.sort(key=lambda record: record.created_at)
        return [replace(record) for record in rows]

    async def append_log(
        self,
        *,
        reference_id: str,
        submission_id: str | None,
        event: LogEvent,
        detail: dict[str, Any],
        now: datetime,
    ) -> None:
        if event not in LOG_EVENTS:
            raise RepositoryValidationError(f"unknown submission log event: {event}")
        async with self._lock:
            self._write_log(
                reference_id=reference_id,
                submission_id=submission_id,
                event=event,
                detail=detail,
                now=now,
            )

    async def list_logs(self, *, reference_id: str, limit: int, offset: int) -> list[SubmissionLogRecord]:
        rows = [entry for entry in self._logs if entry.reference_id == reference_id]
        return [replace(entry, detail=dict(entry.detail)) for entry in rows[offset : offset + limit]]

    def _require(self, submission_id: str) -> SubmissionRecord:
        record = self._submissions.get(submission_id)
        if record is None:
            raise RepositoryNotFoundError("submission not found")
        return record

    def _write_log(
        self,
        *,
        reference_id: str,
        submission_id: str | None,
        event: str,
        detail: dict[str, Any],
        now: datetime,
    ) -> None:
        self._logs.append(
            SubmissionLogRecord(
                id=next(self._log_ids),
                reference_id=reference_id,
                submission_id=submission_id,
                event=event,
                detail=dict(detail),
                created_at=now,
            )
        )
