from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskIn(CamelModel):
    # Content rules and reason codes live in IntakeGuard.
    name: str | None = None
    description: str | None = None
    due_date_offset_days: int | None = None
    priority: str | None = None
    category: str | None = None
    assignee_email: str | None = None
    required: bool | None = None
    reminder_lead_days: int | None = None


class SubmissionIn(CamelModel):
    reference_id: str | None = None
    submitter_email: str | None = None
    submitter_name: str | None = None
    related_record_id: str | None = None
    related_object_type: str | None = None
    session_id: str | None = None
    tasks: list[TaskIn] | None = None

    def to_intake_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"session_id"})


class SubmissionAcceptedOut(CamelModel):
    success: bool = True
    reference_id: str


class SubmissionRejectedOut(BaseModel):
    reason: str
    message: str


class SubmissionStatusOut(CamelModel):
    reference_id: str
    status: str
    production_plan_id: str | None = None
    submitted_at: datetime


class TaskTemplateOut(BaseModel):
    id: str
    name: str
    description: str
    category: str
    priority: str
    duration_days: int
