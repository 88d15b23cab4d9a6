"""Real-time notifier delivery - drains the outbox to NOTIFIER_URL.

Delivery is best-effort: a failed POST leaves the event undelivered for the
next run and records the error on the row.
"""

from __future__ import annotations

import os
from typing import Any

import requests

from lexbill.infra.db import txn
from lexbill.infra.repositories import outbox_repository
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)

HTTP_TIMEOUT = float(os.environ.get("NOTIFIER_TIMEOUT_SECONDS", "5"))

# Events tried this many times are left for operators
MAX_ATTEMPTS = 10


def _post_event(url: str, event: dict[str, Any]) -> None:
    response = requests.post(
        url,
        json={
            "event": event["event_type"],
            "conversation_id": event["conversation_id"],
            "aggregate_id": event["aggregate_id"],
            "data": event["payload"],
        },
        headers={
            "Content-Type": "application/json",
            "X-Correlation-ID": event.get("correlation_id") or "",
        },
        timeout=HTTP_TIMEOUT,
    )
    response.raise_for_status()


def dispatch_pending(limit: int = 50, notifier_url: str | None = None) -> dict[str, int | str]:
    """Deliver up to limit undelivered outbox events.

    Rows are claimed with SKIP LOCKED, so concurrent runs never send the
    same event twice.

    Returns:
        Dict with status and delivered/failed counts.
    """
    url = notifier_url or os.environ.get("NOTIFIER_URL", "")
    if not url:
        logger.info("notifier disabled: NOTIFIER_URL not set")
        return {"status": "disabled", "delivered": 0, "failed": 0}

    delivered = 0
    failed = 0

    with txn() as cur:
        for event in outbox_repository.claim_undelivered(cur, limit=limit, max_attempts=MAX_ATTEMPTS):
            try:
                _post_event(url, event)
            except requests.RequestException as e:
                failed += 1
                outbox_repository.mark_failed(cur, event["id"], type(e).__name__)
                logger.warning(
                    "outbox event delivery failed",
                    extra={
                        "extra_fields": safe_log_context(
                            event_id=event["id"],
                            event_type=event["event_type"],
                            error_type=type(e).__name__,
                        )
                    },
                )
                continue
            outbox_repository.mark_delivered(cur, event["id"])
            delivered += 1

    if delivered or failed:
        logger.info(
            "outbox dispatch finished",
            extra={"extra_fields": safe_log_context(delivered=delivered, failed=failed)},
        )
    return {"status": "ok", "delivered": delivered, "failed": failed}
