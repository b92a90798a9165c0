from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryRateLimitedError(RepositoryError):
    """Raised when the submitter's hourly counter is already at the ceiling."""


class SubmissionStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SYNCED = "Synced"
    FAILED = "Failed"


LogEvent = Literal[
    "received",
    "rate-limited",
    "validation-failed",
    "dispatched",
    "synced",
    "sync-failed",
    "retried",
    "retry-exhausted",
    "reaped",
]
LOG_EVENTS = {
    "received",
    "rate-limited",
    "validation-failed",
    "dispatched",
    "synced",
    "sync-failed",
    "retried",
    "retry-exhausted",
    "reaped",
}
TASK_PRIORITIES = ("High", "Medium", "Low")
REAPED_ERROR_MESSAGE = "sync interrupted: processing timeout exceeded"


@dataclass(slots=True)
class TaskDraft:
    name: str
    description: str = ""
    due_date_offset_days: int = 1
    priority: str = "Medium"
    category: str = "Follow-up"
    required: bool = True
    reminder_lead_days: int = 1
    assignee_email: str | None = None


@dataclass(slots=True)
class SubmissionDraft:
    reference_id: str
    submitter_email: str
    submitter_name: str
    related_object_type: str
    tasks: list[TaskDraft]
    related_record_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class RateLimitWindow:
    identity: str
    bucket: str
    ceiling: int


@dataclass(slots=True)
class SubmissionRecord:
    id: str
    reference_id: str
    submitter_email: str
    submitter_name: str
    related_object_type: str
    status: SubmissionStatus
    created_at: datetime
    related_record_id: str | None = None
    retry_count: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    last_synced_at: datetime | None = None
    next_retry_at: datetime | None = None
    escalated_at: datetime | None = None
    production_plan_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class TaskRecord:
    id: str
    submission_id: str
    position: int
    name: str
    description: str
    due_date_offset_days: int
    priority: str
    category: str
    required: bool
    reminder_lead_days: int
    assignee_email: str | None = None


@dataclass(slots=True)
class SubmissionLogRecord:
    id: int
    reference_id: str
    event: str
    created_at: datetime
    submission_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class StagingRepository(Protocol):
    """Persistence port for submissions, tasks, the submission log and rate-limit counters."""

    async def close(self) -> None: ...

    async def stage_submission(
        self,
        draft: SubmissionDraft,
        *,
        rate_limit: RateLimitWindow,
        now: datetime,
    ) -> SubmissionRecord: ...

    async def get_submission(self, submission_id: str) -> SubmissionRecord: ...

    async def get_submission_by_reference(self, reference_id: str) -> SubmissionRecord | None: ...

    async def list_tasks(self, submission_id: str) -> list[TaskRecord]: ...

    async def claim_for_sync(self, submission_id: str, *, now: datetime) -> tuple[SubmissionRecord, bool]: ...

    async def mark_synced(
        self,
        submission_id: str,
        *,
        production_plan_id: str,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord: ...

    async def mark_failed(
        self,
        submission_id: str,
        *,
        error: str,
        next_retry_at: datetime | None,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord: ...

    async def claim_failed_for_retry(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
        ignore_backoff: bool = False,
    ) -> list[SubmissionRecord]: ...

    async def claim_exhausted_for_escalation(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]: ...

    async def reap_stale_processing(
        self,
        *,
        older_than: datetime,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]: ...

    async def list_submission_ids(self, *, status: SubmissionStatus, limit: int) -> list[str]: ...

    async def list_submissions(
        self,
        *,
        status: SubmissionStatus | None,
        since: datetime | None,
        limit: int,
        offset: int,
    ) -> list[SubmissionRecord]: ...

    async def list_submissions_since(self, since: datetime | None) -> list[SubmissionRecord]: ...

    async def append_log(
        self,
        *,
        reference_id: str,
        submission_id: str | None,
        event: LogEvent,
        detail: dict[str, Any],
        now: datetime,
    ) -> None: ...

    async def list_logs(self, *, reference_id: str, limit: int, offset: int) -> list[SubmissionLogRecord]: ...


_SUBMISSION_COLUMNS = """
  id::text as id,
  reference_id,
  submitter_email,
  submitter_name,
  related_record_id,
  related_object_type,
  status,
  retry_count,
  last_error,
  created_at,
  last_attempt_at,
  last_synced_at,
  next_retry_at,
  escalated_at,
  production_plan_id,
  ip_address,
  user_agent,
  session_id
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def stage_submission(
        self,
        draft: SubmissionDraft,
        *,
        rate_limit: RateLimitWindow,
        now: datetime,
    ) -> SubmissionRecord:
        if rate_limit.ceiling <= 0:
            raise RepositoryRateLimitedError("submissions are disabled for this identity")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Conditional upsert: the increment only happens while the counter is below the ceiling.
                    counted = await conn.fetchval(
                        """
                        insert into rate_limit_counters (identity, hour_bucket, count, updated_at)
                        values ($1, $2, 1, $4)
                        on conflict (identity, hour_bucket) do update
                        set count = rate_limit_counters.count + 1, updated_at = $4
                        where rate_limit_counters.count < $3
                        returning count
                        """,
                        rate_limit.identity,
                        rate_limit.bucket,
                        rate_limit.ceiling,
                        now,
                    )
                    if counted is None:
                        raise RepositoryRateLimitedError(
                            f"rate limit of {rate_limit.ceiling} submissions per hour reached"
                        )

                    row = await conn.fetchrow(
                        f"""
                        insert into submissions (
                          reference_id,
                          submitter_email,
                          submitter_name,
                          related_record_id,
                          related_object_type,
                          status,
                          created_at,
                          ip_address,
                          user_agent,
                          session_id
                        )
                        values ($1, $2, $3, $4, $5, 'Pending', $6, $7, $8, $9)
                        returning {_SUBMISSION_COLUMNS}
                        """,
                        draft.reference_id,
                        draft.submitter_email,
                        draft.submitter_name,
                        draft.related_record_id,
                        draft.related_object_type,
                        now,
                        draft.ip_address,
                        draft.user_agent,
                        draft.session_id,
                    )
                    await conn.executemany(
                        """
                        insert into submission_tasks (
                          submission_id,
                          position,
                          name,
                          description,
                          due_date_offset_days,
                          priority,
                          category,
                          required,
                          reminder_lead_days,
                          assignee_email
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                        """,
                        [
                            (
                                row["id"],
                                position,
                                task.name,
                                task.description,
                                task.due_date_offset_days,
                                task.priority,
                                task.category,
                                task.required,
                                task.reminder_lead_days,
                                task.assignee_email,
                            )
                            for position, task in enumerate(draft.tasks)
                        ],
                    )
                    await self._insert_log(
                        conn=conn,
                        reference_id=draft.reference_id,
                        submission_id=row["id"],
                        event="received",
                        detail={"task_count": len(draft.tasks), "hour_bucket": rate_limit.bucket},
                        now=now,
                    )
                    return self._submission_row_to_record(row)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("reference id already exists") from exc

    async def get_submission(self, submission_id: str) -> SubmissionRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_SUBMISSION_COLUMNS} from submissions where id = $1::uuid",
                submission_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("submission not found") from exc
        if not row:
            raise RepositoryNotFoundError("submission not found")
        return self._submission_row_to_record(row)

    async def get_submission_by_reference(self, reference_id: str) -> SubmissionRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_SUBMISSION_COLUMNS} from submissions where reference_id = $1",
            reference_id,
        )
        return self._submission_row_to_record(row) if row else None

    async def list_tasks(self, submission_id: str) -> list[TaskRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              submission_id::text as submission_id,
              position,
              name,
              description,
              due_date_offset_days,
              priority,
              category,
              required,
              reminder_lead_days,
              assignee_email
            from submission_tasks
            where submission_id = $1::uuid
            order by position asc
            """,
            submission_id,
        )
        return [
            TaskRecord(
                id=row["id"],
                submission_id=row["submission_id"],
                position=int(row["position"]),
                name=row["name"],
                description=row["description"] or "",
                due_date_offset_days=int(row["due_date_offset_days"]),
                priority=row["priority"],
                category=row["category"],
                required=bool(row["required"]),
                reminder_lead_days=int(row["reminder_lead_days"]),
                assignee_email=row["assignee_email"],
            )
            for row in rows
        ]

    async def claim_for_sync(self, submission_id: str, *, now: datetime) -> tuple[SubmissionRecord, bool]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update submissions
                set status = 'Processing', last_attempt_at = $2
                where id = $1::uuid and status = 'Pending'
                returning {_SUBMISSION_COLUMNS}
                """,
                submission_id,
                now,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("submission not found") from exc
        if row:
            return self._submission_row_to_record(row), True
        # Not claimable: report the current state so the caller can decide.
        return await self.get_submission(submission_id), False

    async def mark_synced(
        self,
        submission_id: str,
        *,
        production_plan_id: str,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update submissions
                    set
                      status = 'Synced',
                      production_plan_id = $2,
                      last_synced_at = $3,
                      last_error = null,
                      next_retry_at = null
                    where id = $1::uuid and status = 'Processing'
                    returning {_SUBMISSION_COLUMNS}
                    """,
                    submission_id,
                    production_plan_id,
                    now,
                )
                if not row:
                    raise RepositoryConflictError("submission is not in Processing state")
                await self._insert_log(
                    conn=conn,
                    reference_id=row["reference_id"],
                    submission_id=row["id"],
                    event="synced",
                    detail=detail,
                    now=now,
                )
                return self._submission_row_to_record(row)

    async def mark_failed(
        self,
        submission_id: str,
        *,
        error: str,
        next_retry_at: datetime | None,
        detail: dict[str, Any],
        now: datetime,
    ) -> SubmissionRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update submissions
                    set status = 'Failed', last_error = $2, next_retry_at = $3
                    where id = $1::uuid and status = 'Processing'
                    returning {_SUBMISSION_COLUMNS}
                    """,
                    submission_id,
                    error,
                    next_retry_at,
                )
                if not row:
                    raise RepositoryConflictError("submission is not in Processing state")
                await self._insert_log(
                    conn=conn,
                    reference_id=row["reference_id"],
                    submission_id=row["id"],
                    event="sync-failed",
                    detail={"error": error, **detail},
                    now=now,
                )
                return self._submission_row_to_record(row)

    async def claim_failed_for_retry(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
        ignore_backoff: bool = False,
    ) -> list[SubmissionRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                due = await conn.fetch(
                    """
                    select id::text as id
                    from submissions
                    where status = 'Failed'
                      and retry_count < $1
                      and ($3::boolean or next_retry_at is null or next_retry_at <= $4)
                    order by coalesce(last_attempt_at, created_at) asc, created_at asc, id asc
                    limit $2
                    for update skip locked
                    """,
                    max_retry_count,
                    bounded_limit,
                    ignore_backoff,
                    now,
                )
                ordered_ids = [row["id"] for row in due]
                if not ordered_ids:
                    return []

                rows = await conn.fetch(
                    f"""
                    update submissions
                    set
                      status = 'Processing',
                      retry_count = retry_count + 1,
                      last_attempt_at = $2,
                      next_retry_at = null
                    where id = any($1::uuid[])
                    returning {_SUBMISSION_COLUMNS}
                    """,
                    ordered_ids,
                    now,
                )
                by_id = {row["id"]: row for row in rows}
                claimed: list[SubmissionRecord] = []
                for submission_id in ordered_ids:
                    row = by_id.get(submission_id)
                    if row is None:
                        continue
                    await self._insert_log(
                        conn=conn,
                        reference_id=row["reference_id"],
                        submission_id=row["id"],
                        event="retried",
                        detail={"retry_count": int(row["retry_count"]), "max_retry_count": max_retry_count},
                        now=now,
                    )
                    claimed.append(self._submission_row_to_record(row))
                return claimed

    async def claim_exhausted_for_escalation(
        self,
        *,
        max_retry_count: int,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with exhausted as (
                      select id
                      from submissions
                      where status = 'Failed'
                        and retry_count >= $1
                        and escalated_at is null
                      order by created_at asc
                      limit $2
                      for update skip locked
                    )
                    update submissions s
                    set escalated_at = $3
                    from exhausted e
                    where s.id = e.id
                    returning {_prefixed_columns("s")}
                    """,
                    max_retry_count,
                    bounded_limit,
                    now,
                )
                for row in rows:
                    await self._insert_log(
                        conn=conn,
                        reference_id=row["reference_id"],
                        submission_id=row["id"],
                        event="retry-exhausted",
                        detail={
                            "retry_count": int(row["retry_count"]),
                            "max_retry_count": max_retry_count,
                            "last_error": row["last_error"],
                        },
                        now=now,
                    )
                return [self._submission_row_to_record(row) for row in rows]

    async def reap_stale_processing(
        self,
        *,
        older_than: datetime,
        limit: int,
        now: datetime,
    ) -> list[SubmissionRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with stale as (
                      select id
                      from submissions
                      where status = 'Processing'
                        and coalesce(last_attempt_at, created_at) <= $1
                      order by coalesce(last_attempt_at, created_at) asc
                      limit $2
                      for update skip locked
                    )
                    update submissions s
                    set status = 'Failed', last_error = $3, next_retry_at = $4
                    from stale st
                    where s.id = st.id
                    returning {_prefixed_columns("s")}
                    """,
                    older_than,
                    bounded_limit,
                    REAPED_ERROR_MESSAGE,
                    now,
                )
                for row in rows:
                    await self._insert_log(
                        conn=conn,
                        reference_id=row["reference_id"],
                        submission_id=row["id"],
                        event="reaped",
                        detail={"reason": "processing_timeout"},
                        now=now,
                    )
                return [self._submission_row_to_record(row) for row in rows]

    async def list_submission_ids(self, *, status: SubmissionStatus, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from submissions
            where status = $1
            order by created_at asc
            limit $2
            """,
            status.value,
            max(1, limit),
        )
        return [row["id"] for row in rows]

    async def list_submissions(
        self,
        *,
        status: SubmissionStatus | None,
        since: datetime | None,
        limit: int,
        offset: int,
    ) -> list[SubmissionRecord]:
        pool = await self._get_pool()
        conditions: list[str] = []
        args: list[Any] = []

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if status is not None:
            conditions.append(f"status = {bind(status.value)}")
        if since is not None:
            conditions.append(f"created_at >= {bind(since)}")

        where_clause = f"where {' and '.join(conditions)}" if conditions else ""
        rows = await pool.fetch(
            f"""
            select {_SUBMISSION_COLUMNS}
            from submissions
            {where_clause}
            order by created_at desc, id desc
            limit {bind(limit)}
            offset {bind(offset)}
            """,
            *args,
        )
        return [self._submission_row_to_record(row) for row in rows]

    async def list_submissions_since(self, since: datetime | None) -> list[SubmissionRecord]:
        pool = await self._get_pool()
        if since is None:
            rows = await pool.fetch(f"select {_SUBMISSION_COLUMNS} from submissions order by created_at asc")
        else:
            rows = await pool.fetch(
                f"select {_SUBMISSION_COLUMNS} from submissions where created_at >= $1 order by created_at asc",
                since,
            )
        return [self._submission_row_to_record(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._insert_log(
                conn=conn,
                reference_id=reference_id,
                submission_id=submission_id,
                event=event,
                detail=detail,
                now=now,
            )

    async def list_logs(self, *, reference_id: str, limit: int, offset: int) -> list[SubmissionLogRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              reference_id,
              submission_id::text as submission_id,
              event,
              detail,
              created_at
            from submission_logs
            where reference_id = $1
            order by created_at asc, id asc
            limit $2
            offset $3
            """,
            reference_id,
            limit,
            offset,
        )
        return [
            SubmissionLogRecord(
                id=int(row["id"]),
                reference_id=row["reference_id"],
                submission_id=row["submission_id"],
                event=row["event"],
                detail=self._coerce_json_dict(row["detail"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _insert_log(
        self,
        *,
        conn: asyncpg.Connection,
        reference_id: str,
        submission_id: str | None,
        event: str,
        detail: dict[str, Any],
        now: datetime,
    ) -> None:
        await conn.execute(
            """
            insert into submission_logs (reference_id, submission_id, event, detail, created_at)
            values ($1, $2::uuid, $3, $4::jsonb, $5)
            """,
            reference_id,
            submission_id,
            event,
            json.dumps(detail, default=str),
            now,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _submission_row_to_record(row: asyncpg.Record) -> SubmissionRecord:
        return SubmissionRecord(
            id=row["id"],
            reference_id=row["reference_id"],
            submitter_email=row["submitter_email"],
            submitter_name=row["submitter_name"],
            related_record_id=row["related_record_id"],
            related_object_type=row["related_object_type"],
            status=SubmissionStatus(row["status"]),
            retry_count=int(row["retry_count"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
            last_attempt_at=row["last_attempt_at"],
            last_synced_at=row["last_synced_at"],
            next_retry_at=row["next_retry_at"],
            escalated_at=row["escalated_at"],
            production_plan_id=row["production_plan_id"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            session_id=row["session_id"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def _prefixed_columns(alias: str) -> str:
    columns = [line.strip().rstrip(",") for line in _SUBMISSION_COLUMNS.strip().splitlines()]
    prefixed: list[str] = []
    for column in columns:
        if column.startswith("id::text"):
            prefixed.append(f"{alias}.id::text as id")
        else:
            prefixed.append(f"{alias}.{column}")
    return ",\n  ".join(prefixed)

