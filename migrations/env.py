"""Alembic environment for the billing schema.

Revisions run hand-written SQL from migrations/sql, so there is no model
metadata to autogenerate from. The revision pointer lives in its own table
so the billing schema can share a database with the chat service.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.insert(0, str(Path(__file__).resolve().parent))

from env_helpers import get_database_url  # noqa: E402

VERSION_TABLE = "lexbill_alembic_version"

# DDL waits this long for locks held by live traffic before failing
MIGRATION_LOCK_TIMEOUT_MS = int(os.environ.get("MIGRATION_LOCK_TIMEOUT_MS", "5000"))

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _configure_and_run(**configure_kwargs) -> None:
    context.configure(target_metadata=None, version_table=VERSION_TABLE, **configure_kwargs)
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    # Emits SQL to stdout for review instead of touching the database
    _configure_and_run(url=get_database_url(), literal_binds=True)
else:
    engine = create_engine(
        get_database_url(),
        poolclass=pool.NullPool,
        connect_args={"options": f"-c lock_timeout={MIGRATION_LOCK_TIMEOUT_MS}"},
    )
    with engine.connect() as connection:
        _configure_and_run(connection=connection)
