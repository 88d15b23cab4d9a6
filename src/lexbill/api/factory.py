"""Build the LexBill ASGI app for one deployment role.

The public role serves clients, lawyers and gateway webhooks. The worker role
additionally exposes the scheduled billing tasks, which are only reachable
with task credentials.
"""

import os

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from lexbill.api.errors import to_http_exception
from lexbill.domain.errors import BillingError
from lexbill.observability.correlation import (
    CORRELATION_ID_HEADER,
    correlation_id_from_header,
    reset_correlation_id,
    set_correlation_id,
)
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

from .routers import public, worker

logger = get_logger(__name__)

APP_ROLES = ("public", "worker")


def create_app(role: str | None = None) -> FastAPI:
    """Create the app; role defaults to APP_ROLE, then "public".

    Raises:
        ValueError: If the role is not one of APP_ROLES.
    """
    role = role or os.environ.get("APP_ROLE", "public")
    if role not in APP_ROLES:
        raise ValueError(f"unknown APP_ROLE: {role!r}")

    app = FastAPI(title="LexBill", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next) -> Response:
        cid = correlation_id_from_header(request.headers.get(CORRELATION_ID_HEADER))
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        # Routes translate their own errors; this catches ones raised from dependencies
        http_exc = to_http_exception(exc)
        logger.warning(
            "billing error reached app handler",
            extra={
                "extra_fields": safe_log_context(
                    path=request.url.path, code=exc.code, status=http_exc.status_code
                )
            },
        )
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    app.include_router(public.router)
    if role == "worker":
        app.include_router(worker.router)

    logger.info("app created", extra={"extra_fields": safe_log_context(app_role=role)})
    return app
