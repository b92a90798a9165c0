from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from opentelemetry import trace

from planbridge.core.config import Settings
from planbridge.core.telemetry import set_span_attributes
from planbridge.services.production import PermanentSyncError, ProductionClient, ProductionSyncError
from planbridge.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    StagingRepository,
    SubmissionRecord,
    SubmissionStatus,
    TaskRecord,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SyncOutcomeKind = Literal["synced", "failed", "already_synced", "in_progress"]


@dataclass(slots=True)
class SyncOutcome:
    submission_id: str
    kind: SyncOutcomeKind
    production_plan_id: str | None = None
    error: str | None = None


def compute_retry_delay_seconds(retry_count: int, *, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    return min(base_seconds * (2 ** max(0, retry_count)), max_seconds)


class SyncEngine:
    """Moves one staged submission into the production plan system.

    Every step is idempotent against the production side: contacts are matched
    by email, plans by external reference id, and tasks by position, so a
    redelivered or retried record never creates a second plan.
    """

    def __init__(
        self,
        *,
        repository: StagingRepository,
        production: ProductionClient,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._production = production
        self._settings = settings

    async def sync(
        self,
        submission_id: str,
        *,
        now: datetime | None = None,
        claimed_at: datetime | None = None,
    ) -> SyncOutcome:
        """Sync one submission.

        Without ``claimed_at`` the record must still be Pending and is claimed
        here. A caller that already moved the record to Processing (the Retry
        Scheduler) passes the ``last_attempt_at`` it stamped; the record is only
        pushed while that stamp still matches.
        """
        current = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("sync.submission") as span:
            set_span_attributes(span, {"submission.id": submission_id, "sync.claimed_by_caller": claimed_at is not None})
            try:
                if claimed_at is None:
                    record, owned = await self._repository.claim_for_sync(submission_id, now=current)
                else:
                    record = await self._repository.get_submission(submission_id)
                    owned = record.status is SubmissionStatus.PROCESSING and record.last_attempt_at == claimed_at
            except RepositoryNotFoundError:
                logger.warning("sync requested for unknown submission id=%s", submission_id)
                return SyncOutcome(submission_id=submission_id, kind="failed", error="submission not found")
            except RepositoryError as exc:
                logger.exception("could not claim submission id=%s for sync", submission_id)
                return SyncOutcome(submission_id=submission_id, kind="failed", error=str(exc))

            set_span_attributes(
                span,
                {
                    "submission.reference_id": record.reference_id,
                    "submission.status": record.status.value,
                    "submission.retry_count": record.retry_count,
                },
            )
            if record.status is SubmissionStatus.SYNCED:
                return SyncOutcome(
                    submission_id=submission_id,
                    kind="already_synced",
                    production_plan_id=record.production_plan_id,
                )
            if not owned:
                if record.status is SubmissionStatus.PROCESSING:
                    logger.info("submission reference_id=%s is already being synced", record.reference_id)
                    return SyncOutcome(submission_id=submission_id, kind="in_progress")
                return SyncOutcome(submission_id=submission_id, kind="failed", error=record.last_error)

            try:
                plan_id, detail = await self._push(record)
            except (ProductionSyncError, RepositoryError) as exc:
                return await self._fail(record, exc, current)
            except Exception as exc:  # pragma: no cover - unexpected failures still end in Failed
                logger.exception("unexpected sync failure for reference_id=%s", record.reference_id)
                return await self._fail(record, exc, current)

            try:
                await self._repository.mark_synced(
                    record.id,
                    production_plan_id=plan_id,
                    detail=detail,
                    now=current,
                )
            except RepositoryError as exc:
                logger.exception("could not record sync success for reference_id=%s", record.reference_id)
                return SyncOutcome(submission_id=submission_id, kind="failed", error=str(exc))

            set_span_attributes(span, {"production.plan_id": plan_id, "sync.tasks_created": detail["tasks_created"]})
            logger.info("synced reference_id=%s plan_id=%s", record.reference_id, plan_id)
            return SyncOutcome(submission_id=submission_id, kind="synced", production_plan_id=plan_id)

    async def _push(self, record: SubmissionRecord) -> tuple[str, dict[str, Any]]:
        tasks = await self._repository.list_tasks(record.id)
        contact_id, contact_created = await self._resolve_contact(record)

        start_date = record.created_at.date()
        plan = await self._production.find_plan_by_reference(record.reference_id)
        plan_reused = plan is not None
        if plan is None:
            plan = await self._production.create_plan(
                name=f"Action plan for {record.submitter_name}",
                contact_id=contact_id,
                external_reference_id=record.reference_id,
                start_date=start_date.isoformat(),
                related_record_id=record.related_record_id,
                related_object_type=record.related_object_type,
            )
        plan_id = _require_id(plan, "plan")

        existing_positions: set[int] = set()
        if plan_reused:
            for task in await self._production.list_plan_tasks(plan_id):
                position = task.get("position")
                if isinstance(position, int) and not isinstance(position, bool):
                    existing_positions.add(position)

        created_tasks = 0
        for task in sorted(tasks, key=lambda item: item.position):
            if task.position in existing_positions:
                continue
            await self._production.create_task(plan_id, _task_payload(record, task, start_date))
            created_tasks += 1

        detail = {
            "production_plan_id": plan_id,
            "contact_id": contact_id,
            "contact_created": contact_created,
            "plan_reused": plan_reused,
            "tasks_created": created_tasks,
            "tasks_total": len(tasks),
        }
        return plan_id, detail

    async def _resolve_contact(self, record: SubmissionRecord) -> tuple[str, bool]:
        contact = await self._production.find_contact_by_email(record.submitter_email)
        if contact is not None:
            return _require_id(contact, "contact"), False
        created = await self._production.create_contact(
            name=record.submitter_name,
            email=record.submitter_email,
            source_type=record.related_object_type,
        )
        return _require_id(created, "contact"), True

    async def _fail(self, record: SubmissionRecord, exc: Exception, current: datetime) -> SyncOutcome:
        error = str(exc) or exc.__class__.__name__
        delay = compute_retry_delay_seconds(
            record.retry_count,
            base_seconds=self._settings.retry_base_seconds,
            max_seconds=self._settings.retry_max_seconds,
        )
        next_retry_at = current + timedelta(seconds=delay)
        logger.warning(
            "sync failed for reference_id=%s retry_count=%s: %s",
            record.reference_id,
            record.retry_count,
            error,
        )
        try:
            await self._repository.mark_failed(
                record.id,
                error=error,
                next_retry_at=next_retry_at,
                detail={
                    "error_type": exc.__class__.__name__,
                    "retry_count": record.retry_count,
                    "next_retry_at": next_retry_at.isoformat(),
                },
                now=current,
            )
        except RepositoryError:
            logger.exception("could not record sync failure for reference_id=%s", record.reference_id)
        return SyncOutcome(submission_id=record.id, kind="failed", error=error)


def _task_payload(record: SubmissionRecord, task: TaskRecord, start_date: Any) -> dict[str, Any]:
    due_date = start_date + timedelta(days=task.due_date_offset_days)
    reminder_date = due_date - timedelta(days=task.reminder_lead_days)
    return {
        "position": task.position,
        "external_task_key": f"{record.reference_id}:{task.position}",
        "name": task.name,
        "description": task.description,
        "priority": task.priority,
        "category": task.category,
        "required": task.required,
        "due_date": due_date.isoformat(),
        "reminder_date": reminder_date.isoformat(),
        "assignee_email": task.assignee_email,
    }


def _require_id(payload: dict[str, Any], kind: str) -> str:
    value = payload.get("id")
    if value is None or value == "":
        raise PermanentSyncError(f"production {kind} is missing an id")
    return str(value)
