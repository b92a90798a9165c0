from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from planbridge.core.config import Settings
from planbridge.core.references import (
    generate_reference_id,
    hour_bucket,
    is_valid_caller_reference,
    is_valid_email,
    normalize_email,
)
from planbridge.services.events import EventNotifier
from planbridge.services.repository import (
    TASK_PRIORITIES,
    RateLimitWindow,
    RepositoryConflictError,
    RepositoryRateLimitedError,
    StagingRepository,
    SubmissionDraft,
    SubmissionStatus,
    TaskDraft,
)
from planbridge.services.templates import DEFAULT_CATEGORY, DEFAULT_PRIORITY, resolve_template

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 32000
MAX_CATEGORY_LENGTH = 80
MAX_METADATA_LENGTH = 512
DEFAULT_RELATED_OBJECT_TYPE = "Lead"
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class IntakeRejectedError(Exception):
    """Base class for synchronous intake rejections; never staged."""

    def __init__(self, reason: str, message: str, reference_id: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.reference_id = reference_id


class IntakeValidationError(IntakeRejectedError):
    """Malformed or incomplete submission."""


class IntakeRateLimitedError(IntakeRejectedError):
    """Submitter exceeded the hourly submission ceiling."""


@dataclass(slots=True)
class IntakeMetadata:
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class IntakeAccepted:
    reference_id: str
    submission_id: str
    replayed: bool = False


class IntakeGuard:
    def __init__(
        self,
        *,
        repository: StagingRepository,
        notifier: EventNotifier,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._settings = settings

    async def accept(
        self,
        payload: dict[str, Any],
        submitter_identity: str | None = None,
        *,
        metadata: IntakeMetadata | None = None,
        now: datetime | None = None,
    ) -> IntakeAccepted:
        current = now or datetime.now(timezone.utc)
        supplied_reference = _clean_text(payload.get("reference_id"), max_length=MAX_METADATA_LENGTH)
        reference_id = supplied_reference or generate_reference_id(current)

        try:
            if supplied_reference and not is_valid_caller_reference(supplied_reference):
                raise IntakeValidationError(
                    "invalid_reference_id",
                    "reference id must be 1-64 characters of letters, digits, '-' or '_'",
                )
            draft = self._build_draft(payload, reference_id=reference_id, metadata=metadata or IntakeMetadata())
        except IntakeValidationError as exc:
            exc.reference_id = reference_id
            await self._log_rejection(reference_id, "validation-failed", exc, current)
            raise

        existing = await self._repository.get_submission_by_reference(reference_id)
        if existing is not None:
            return await self._replay_or_reject(existing, draft, current)

        identity = normalize_email(submitter_identity) if submitter_identity else draft.submitter_email
        window = RateLimitWindow(
            identity=identity,
            bucket=hour_bucket(current),
            ceiling=self._settings.rate_limit_per_hour,
        )
        try:
            record = await self._repository.stage_submission(draft, rate_limit=window, now=current)
        except RepositoryRateLimitedError as exc:
            rejection = IntakeRateLimitedError("rate_limited", str(exc), reference_id)
            await self._log_rejection(
                reference_id,
                "rate-limited",
                rejection,
                current,
                extra={"hour_bucket": window.bucket, "ceiling": window.ceiling},
            )
            raise rejection from exc
        except RepositoryConflictError as exc:
            rejection = IntakeValidationError("duplicate_reference", "reference id is already in use", reference_id)
            await self._log_rejection(reference_id, "validation-failed", rejection, current)
            raise rejection from exc

        logger.info(
            "staged submission reference_id=%s submission_id=%s tasks=%s",
            record.reference_id,
            record.id,
            len(draft.tasks),
        )
        self._notifier.notify(record.id)
        return IntakeAccepted(reference_id=record.reference_id, submission_id=record.id)

    async def _replay_or_reject(
        self,
        existing: Any,
        draft: SubmissionDraft,
        current: datetime,
    ) -> IntakeAccepted:
        if existing.submitter_email != draft.submitter_email:
            rejection = IntakeValidationError(
                "duplicate_reference",
                "reference id is already in use",
                existing.reference_id,
            )
            await self._log_rejection(existing.reference_id, "validation-failed", rejection, current)
            raise rejection

        logger.info("idempotent replay for reference_id=%s status=%s", existing.reference_id, existing.status.value)
        if existing.status is SubmissionStatus.PENDING:
            self._notifier.notify(existing.id)
        return IntakeAccepted(reference_id=existing.reference_id, submission_id=existing.id, replayed=True)

    def _build_draft(
        self,
        payload: dict[str, Any],
        *,
        reference_id: str,
        metadata: IntakeMetadata,
    ) -> SubmissionDraft:
        email = normalize_email(_clean_text(payload.get("submitter_email"), max_length=MAX_NAME_LENGTH) or "")
        if not is_valid_email(email):
            raise IntakeValidationError("invalid_email", "please provide a valid email address")

        name = _clean_text(payload.get("submitter_name"), max_length=MAX_NAME_LENGTH)
        if not name:
            raise IntakeValidationError("missing_name", "please provide your name")

        raw_tasks = payload.get("tasks")
        if not isinstance(raw_tasks, list) or not raw_tasks:
            raise IntakeValidationError("no_tasks", "please add at least one task")
        if len(raw_tasks) > self._settings.max_tasks_per_plan:
            raise IntakeValidationError(
                "too_many_tasks",
                f"a plan may contain at most {self._settings.max_tasks_per_plan} tasks",
            )

        tasks = [_build_task(raw_task, position) for position, raw_task in enumerate(raw_tasks)]

        return SubmissionDraft(
            reference_id=reference_id,
            submitter_email=email,
            submitter_name=name,
            related_record_id=_clean_text(payload.get("related_record_id"), max_length=MAX_NAME_LENGTH),
            related_object_type=(
                _clean_text(payload.get("related_object_type"), max_length=MAX_CATEGORY_LENGTH)
                or DEFAULT_RELATED_OBJECT_TYPE
            ),
            tasks=tasks,
            ip_address=_clean_text(metadata.ip_address, max_length=MAX_METADATA_LENGTH),
            user_agent=_clean_text(metadata.user_agent, max_length=MAX_METADATA_LENGTH),
            session_id=_clean_text(metadata.session_id, max_length=MAX_METADATA_LENGTH),
        )

    async def _log_rejection(
        self,
        reference_id: str,
        event: str,
        rejection: IntakeRejectedError,
        current: datetime,
        *,
        extra: dict[str, Any] | None = None,
    ) -> None:
        logger.info("rejected submission reference_id=%s reason=%s", reference_id, rejection.reason)
        await self._repository.append_log(
            reference_id=reference_id,
            submission_id=None,
            event=event,  # type: ignore[arg-type]
            detail={"reason": rejection.reason, "message": rejection.message, **(extra or {})},
            now=current,
        )


def _build_task(raw_task: Any, position: int) -> TaskDraft:
    if not isinstance(raw_task, dict):
        raise IntakeValidationError("task_name_required", f"task {position + 1} is malformed")

    name = _clean_text(raw_task.get("name"), max_length=MAX_NAME_LENGTH)
    if not name:
        raise IntakeValidationError("task_name_required", f"task {position + 1} requires a name")

    template = resolve_template(name)

    priority_raw = _clean_text(raw_task.get("priority"), max_length=MAX_CATEGORY_LENGTH)
    if priority_raw:
        priority = _normalize_priority(priority_raw)
        if priority is None:
            raise IntakeValidationError(
                "invalid_priority",
                f"task {position + 1} priority must be one of {', '.join(TASK_PRIORITIES)}",
            )
    else:
        priority = template.priority if template else DEFAULT_PRIORITY

    category = _clean_text(raw_task.get("category"), max_length=MAX_CATEGORY_LENGTH)
    if not category:
        category = template.category if template else DEFAULT_CATEGORY

    default_offset = template.duration_days if template else 1
    assignee = _clean_text(raw_task.get("assignee_email"), max_length=MAX_NAME_LENGTH)
    if assignee:
        assignee = normalize_email(assignee)
        if not is_valid_email(assignee):
            raise IntakeValidationError("invalid_email", f"task {position + 1} assignee email is invalid")

    return TaskDraft(
        name=name,
        description=_clean_text(raw_task.get("description"), max_length=MAX_DESCRIPTION_LENGTH) or "",
        due_date_offset_days=_non_negative_int(raw_task.get("due_date_offset_days"), default=default_offset),
        priority=priority,
        category=category,
        required=_as_bool(raw_task.get("required"), default=True),
        reminder_lead_days=_non_negative_int(raw_task.get("reminder_lead_days"), default=1),
        assignee_email=assignee,
    )


def _clean_text(value: Any, *, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def _normalize_priority(value: str) -> str | None:
    lowered = value.lower()
    for priority in TASK_PRIORITIES:
        if priority.lower() == lowered:
            return priority
    return None


def _non_negative_int(value: Any, *, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default
