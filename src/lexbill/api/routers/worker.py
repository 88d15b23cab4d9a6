"""Routes mounted only when APP_ROLE=worker: scheduled billing tasks."""

from fastapi import APIRouter

from lexbill.api.routes import tasks_billing

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    return {"status": "ok", "subsystem": "tasks"}


@router.get("/internal/health")
def internal_health() -> dict:
    return {"status": "ok", "subsystem": "internal", "jobs": list(tasks_billing.JOB_NAMES)}


router.include_router(tasks_billing.router)
