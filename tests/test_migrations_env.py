"""Tests for migration URL helpers (no alembic context needed)."""

import pytest

from env_helpers import get_database_url, normalize_database_url


def test_postgres_scheme_normalized():
    assert normalize_database_url("postgres://u:p@h:5432/db") == "postgresql+psycopg2://u:p@h:5432/db"


def test_postgresql_scheme_normalized():
    assert normalize_database_url("postgresql://u:p@h/db") == "postgresql+psycopg2://u:p@h/db"


def test_password_injected_when_missing():
    url = normalize_database_url("postgresql://u@h:5432/db", "s3cr3t!")
    assert url == "postgresql+psycopg2://u:s3cr3t%21@h:5432/db"


def test_password_not_overridden():
    url = normalize_database_url("postgresql://u:p@h/db", "other")
    assert url == "postgresql+psycopg2://u:p@h/db"


def test_missing_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        get_database_url()


def test_libpq_dsn_rejected(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "dbname=db user=u")
    with pytest.raises(RuntimeError):
        get_database_url()
