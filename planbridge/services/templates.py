from __future__ import annotations

from dataclasses import dataclass

DEFAULT_CATEGORY = "Follow-up"
DEFAULT_PRIORITY = "Medium"
TASK_CATEGORIES = ("Follow-up", "Documentation", "Review", "Approval", "Other")


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    id: str
    name: str
    description: str
    category: str
    priority: str
    duration_days: int


DEFAULT_TASK_TEMPLATES: tuple[TaskTemplate, ...] = (
    TaskTemplate(
        id="initial-follow-up",
        name="Initial follow-up call",
        description="Reach out to confirm the request and agree on next steps.",
        category="Follow-up",
        priority="High",
        duration_days=1,
    ),
    TaskTemplate(
        id="collect-documents",
        name="Collect supporting documents",
        description="Gather the documents needed to process the request.",
        category="Documentation",
        priority="Medium",
        duration_days=7,
    ),
    TaskTemplate(
        id="internal-review",
        name="Internal review",
        description="Review the collected information with the owning team.",
        category="Review",
        priority="Medium",
        duration_days=14,
    ),
    TaskTemplate(
        id="final-approval",
        name="Final approval",
        description="Obtain sign-off before closing the plan.",
        category="Approval",
        priority="Low",
        duration_days=21,
    ),
)


def list_task_templates() -> list[TaskTemplate]:
    return list(DEFAULT_TASK_TEMPLATES)


def resolve_template(name: str) -> TaskTemplate | None:
    """Match a task name against the catalog, case-insensitively."""
    lowered = name.strip().lower()
    for template in DEFAULT_TASK_TEMPLATES:
        if template.name.lower() == lowered:
            return template
    return None
