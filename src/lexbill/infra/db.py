"""Postgres access for the billing engine (psycopg2, no ORM).

Every billing write is a short transaction opened with txn(). Sessions carry
statement and lock timeouts, so a charge row held by a slow writer turns into
an error instead of a stuck request. Sessions are tagged with
application_name=lexbill-<APP_ROLE> so public and worker traffic can be told
apart in pg_stat_activity.
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_STATEMENT_TIMEOUT_MS = 10000
DEFAULT_LOCK_TIMEOUT_MS = 3000


def _session_options() -> str:
    statement_timeout_ms = int(
        os.environ.get("DB_STATEMENT_TIMEOUT_MS", str(DEFAULT_STATEMENT_TIMEOUT_MS))
    )
    lock_timeout_ms = int(os.environ.get("DB_LOCK_TIMEOUT_MS", str(DEFAULT_LOCK_TIMEOUT_MS)))
    return f"-c statement_timeout={statement_timeout_ms} -c lock_timeout={lock_timeout_ms}"


def get_conn() -> PgConnection:
    """Open a new connection to DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    return psycopg2.connect(
        dsn,
        connect_timeout=int(os.environ.get("DB_CONNECT_TIMEOUT", str(DEFAULT_CONNECT_TIMEOUT))),
        application_name=f"lexbill-{os.environ.get('APP_ROLE', 'public')}",
        options=_session_options(),
    )


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a block in one transaction: commit on success, rollback on error.

    A connection opened here is closed on exit; a passed-in one is left open.

    Example:
        with txn() as cur:
            charges.transition(cur, charge_id, ChargeStatus.ACCEPTED)
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def claim_rows(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Run a SELECT with FOR UPDATE SKIP LOCKED and return the locked rows.

    Concurrent workers claiming from the same queue table get disjoint
    batches. Locks are held until the caller's transaction ends.
    """
    cur.execute(query.rstrip().rstrip(";") + " FOR UPDATE SKIP LOCKED", params)
    return cur.fetchall()
