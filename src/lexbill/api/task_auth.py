"""Authentication for worker task endpoints.

Scheduled jobs (expiry sweep, outbox dispatch) reach the worker through
Cloud Scheduler / Cloud Tasks with a Google-signed OIDC token. In local dev
a shared secret header is accepted instead.
"""

from __future__ import annotations

import hmac
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Local dev audience - enables X-Internal-Task-Secret fallback
LOCAL_DEV_AUDIENCE = "lexbill-tasks-local"

INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"


def extract_bearer_token(request: Request) -> str | None:
    """Return the Bearer token from Authorization, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_task_oidc(token: str) -> bool:
    """Verify a Google-signed OIDC token.

    Audience comes from TASKS_OIDC_AUDIENCE; when TASKS_OIDC_SERVICE_ACCOUNT
    is set, the token email must match it. Fails closed when the audience is
    not configured.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "task OIDC token rejected",
            extra={"extra_fields": safe_log_context(error=str(e), expected_audience=audience)},
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "task OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False

    return True


def _internal_secret_ok(request: Request) -> bool:
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") != LOCAL_DEV_AUDIENCE:
        return False
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    provided = request.headers.get(INTERNAL_SECRET_HEADER, "")
    return bool(expected) and hmac.compare_digest(expected, provided)


def verify_task_auth(request: Request) -> bool:
    """True if the request carries a valid task OIDC token or the local dev secret."""
    if _internal_secret_ok(request):
        logger.info(
            "task auth via internal secret (local dev)",
            extra={"extra_fields": safe_log_context(auth_method="internal_secret")},
        )
        return True

    token = extract_bearer_token(request)
    if token is None:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)


def require_task_auth(request: Request) -> None:
    """FastAPI dependency: 401 unless verify_task_auth passes."""
    if not verify_task_auth(request):
        raise HTTPException(status_code=401, detail="unauthorized")
