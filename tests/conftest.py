from __future__ import annotations

import asyncio
import json
from datetime import datetime
from itertools import count
from typing import Any

import httpx
import pytest

from planbridge.core.config import Settings
from planbridge.services.pipeline import Pipeline, build_pipeline
from planbridge.services.repository import RateLimitWindow, SubmissionDraft, SubmissionRecord, TaskDraft

PRODUCTION_BASE_URL = "http://production.test"
WEBHOOK_URL = "http://hooks.test/escalations"


class FakeProductionSystem:
    """Minimal production plan API behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.contacts: list[dict[str, Any]] = []
        self.plans: list[dict[str, Any]] = []
        self.tasks: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_next = 0
        self.fail_task_after: int | None = None
        self.latency_seconds = 0.0
        self._ids = count(1)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.async_handler)

    async def async_handler(self, request: httpx.Request) -> httpx.Response:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        return self.handler(request)

    def add_contact(self, *, name: str, email: str) -> dict[str, Any]:
        contact = {"id": f"contact-{next(self._ids)}", "name": name, "email": email}
        self.contacts.append(contact)
        return contact

    def add_plan(self, *, external_reference_id: str, contact_id: str) -> dict[str, Any]:
        plan = {
            "id": f"plan-{next(self._ids)}",
            "name": "Existing plan",
            "contact_id": contact_id,
            "external_reference_id": external_reference_id,
        }
        self.plans.append(plan)
        self.tasks[plan["id"]] = []
        return plan

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.calls.append((method, path))

        if self.fail_next > 0:
            self.fail_next -= 1
            return httpx.Response(503, json={"detail": "production unavailable"})

        if path == "/contacts" and method == "GET":
            email = request.url.params.get("email")
            return httpx.Response(200, json=[item for item in self.contacts if item["email"] == email])

        if path == "/contacts" and method == "POST":
            body = json.loads(request.content)
            contact = {"id": f"contact-{next(self._ids)}", **body}
            self.contacts.append(contact)
            return httpx.Response(201, json=contact)

        if path == "/plans" and method == "GET":
            reference_id = request.url.params.get("external_reference_id")
            return httpx.Response(
                200,
                json={"items": [plan for plan in self.plans if plan["external_reference_id"] == reference_id]},
            )

        if path == "/plans" and method == "POST":
            body = json.loads(request.content)
            plan = {"id": f"plan-{next(self._ids)}", **body}
            self.plans.append(plan)
            self.tasks[plan["id"]] = []
            return httpx.Response(201, json=plan)

        parts = path.strip("/").split("/")
        if len(parts) == 3 and parts[0] == "plans" and parts[2] == "tasks":
            plan_tasks = self.tasks.get(parts[1])
            if plan_tasks is None:
                return httpx.Response(404, json={"detail": "plan not found"})
            if method == "GET":
                return httpx.Response(200, json=plan_tasks)
            if self.fail_task_after is not None and len(plan_tasks) >= self.fail_task_after:
                self.fail_task_after = None
                return httpx.Response(503, json={"detail": "task service unavailable"})
            body = json.loads(request.content)
            task = {"id": f"task-{next(self._ids)}", **body}
            plan_tasks.append(task)
            return httpx.Response(201, json=task)

        return httpx.Response(404, json={"detail": "not found"})


class WebhookRecorder:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.payloads: list[dict[str, Any]] = []

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            self.payloads.append(json.loads(request.content))
            return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

        return httpx.MockTransport(handler)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "storage_backend": "memory",
        "production_api_base_url": PRODUCTION_BASE_URL,
        "production_api_key": "test-key",
        "retry_base_seconds": 0,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_pipeline(
    production: FakeProductionSystem,
    webhook: WebhookRecorder | None = None,
    **overrides: Any,
) -> Pipeline:
    if webhook is not None:
        overrides.setdefault("notification_webhook_url", WEBHOOK_URL)
    return build_pipeline(
        make_settings(**overrides),
        production_transport=production.transport(),
        notification_transport=webhook.transport() if webhook is not None else None,
    )


def submission_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "submitter_email": "Ada@Example.com ",
        "submitter_name": "Ada Lovelace",
        "related_object_type": "Lead",
        "tasks": [
            {"name": "Initial follow-up call", "due_date_offset_days": 1, "reminder_lead_days": 1},
            {"name": "Collect supporting documents", "due_date_offset_days": 7, "reminder_lead_days": 2},
            {"name": "Final approval", "due_date_offset_days": 21, "reminder_lead_days": 3, "priority": "high"},
        ],
    }
    payload.update(overrides)
    return payload


async def stage(
    pipeline: Pipeline,
    *,
    reference_id: str,
    now: datetime,
    email: str = "ada@example.com",
    name: str = "Ada Lovelace",
    task_count: int = 1,
) -> SubmissionRecord:
    draft = SubmissionDraft(
        reference_id=reference_id,
        submitter_email=email,
        submitter_name=name,
        related_object_type="Lead",
        tasks=[TaskDraft(name=f"Task {index + 1}") for index in range(task_count)],
    )
    return await pipeline.repository.stage_submission(
        draft,
        rate_limit=RateLimitWindow(identity=f"{reference_id}:{email}", bucket="test", ceiling=100),
        now=now,
    )


@pytest.fixture
def production() -> FakeProductionSystem:
    return FakeProductionSystem()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()
