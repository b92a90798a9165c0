from fastapi import APIRouter

from planbridge.schemas.submissions import TaskTemplateOut
from planbridge.services.templates import list_task_templates

router = APIRouter()


@router.get("", response_model=list[TaskTemplateOut])
async def get_templates() -> list[TaskTemplateOut]:
    return [
        TaskTemplateOut(
            id=template.id,
            name=template.name,
            description=template.description,
            category=template.category,
            priority=template.priority,
            duration_days=template.duration_days,
        )
        for template in list_task_templates()
    ]
