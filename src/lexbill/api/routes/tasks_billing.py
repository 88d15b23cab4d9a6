"""Worker routes for scheduled billing jobs."""

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from lexbill.api.task_auth import verify_task_auth
from lexbill.domain import billing
from lexbill.infra import notifier
from lexbill.observability.correlation import get_correlation_id
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/billing", tags=["tasks"])

logger = get_logger(__name__)

DEFAULT_EXPIRE_LIMIT = 500
DEFAULT_DISPATCH_LIMIT = 50

JOB_NAMES = ("expire-charges", "dispatch-events")


async def _read_limit(request: Request, default: int) -> int | None:
    """Optional {"limit": n} body. None if the body is present but invalid."""
    body = await request.body()
    if not body:
        return default
    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        return None
    if not isinstance(payload, dict):
        return None
    limit = payload.get("limit", default)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        return None
    return limit


def _require_auth(request: Request) -> None:
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/expire-charges")
async def handle_expire_charges(request: Request) -> JSONResponse:
    """Expire pending charges whose expires_at has passed.

    Safe to run concurrently: each charge moves pending -> expired through a
    conditional update, so a charge is expired at most once.
    """
    _require_auth(request)
    correlation_id = get_correlation_id()

    limit = await _read_limit(request, DEFAULT_EXPIRE_LIMIT)
    if limit is None:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid limit"})

    expired = billing.expire_charges(limit=limit)

    logger.info(
        "expire charges task done",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, expired=len(expired))},
    )
    return JSONResponse(status_code=200, content={"ok": True, "expired": len(expired)})


@router.post("/dispatch-events")
async def handle_dispatch_events(request: Request) -> JSONResponse:
    """Deliver pending outbox events to the real-time notifier."""
    _require_auth(request)

    limit = await _read_limit(request, DEFAULT_DISPATCH_LIMIT)
    if limit is None:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid limit"})

    result = notifier.dispatch_pending(limit=limit)
    return JSONResponse(status_code=200, content={"ok": True, **result})
