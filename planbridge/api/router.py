from fastapi import APIRouter

from planbridge.api.routes import dashboard, health, operations, submissions, templates

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(submissions.router, prefix="/submissions", tags=["public"])
api_router.include_router(templates.router, prefix="/templates", tags=["public"])
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["operator"])
api_router.include_router(operations.router, prefix="/operations", tags=["operator"])
