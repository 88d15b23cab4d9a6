"""Tests for OIDC JWT authentication."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
import requests
from fastapi.testclient import TestClient

from helpers import _create_jwks, _create_token, _generate_rsa_keypair, make_user
from lexbill.api.factory import create_app

LIST_CLIENT_CHARGES = "lexbill.api.routes.billing.billing.list_charges_by_client"


@pytest.fixture
def rsa_keypair():
    return _generate_rsa_keypair()


@pytest.fixture
def jwks(rsa_keypair):
    _, public_key = rsa_keypair
    return _create_jwks(public_key)


@pytest.fixture
def oidc_env(monkeypatch):
    monkeypatch.setenv("OIDC_ISSUER", "https://auth.example.com")
    monkeypatch.setenv("OIDC_AUDIENCE", "lexbill-api")
    monkeypatch.setenv("OIDC_JWKS_URL", "https://auth.example.com/.well-known/jwks.json")
    monkeypatch.delenv("OIDC_AUTHORIZED_PARTIES", raising=False)


@pytest.fixture
def mock_jwks_fetch(jwks):
    with patch("lexbill.api.auth._fetch_jwks", return_value=jwks) as mock:
        yield mock


@pytest.fixture
def mock_db_user():
    user = make_user("client", "client-1")

    def lookup(external_subject: str):
        return user if external_subject == "user-123" else None

    with patch("lexbill.api.auth._get_user_from_db", side_effect=lookup):
        yield user


@pytest.fixture
def client():
    with patch(LIST_CLIENT_CHARGES, return_value=[]):
        yield TestClient(create_app(role="public"))


def _get(client, token: str | None = None, scheme: str = "Bearer"):
    headers = {"Authorization": f"{scheme} {token}"} if token else {}
    return client.get("/billing/client", headers=headers)


class TestAuthNoToken:
    def test_missing_auth_header(self, client, oidc_env):
        response = _get(client)
        assert response.status_code == 401
        assert "Missing authorization header" in response.json()["detail"]

    def test_invalid_bearer_format(self, client, oidc_env):
        response = _get(client, "abc", scheme="Basic")
        assert response.status_code == 401
        assert "Invalid authorization header" in response.json()["detail"]

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.delenv("OIDC_ISSUER", raising=False)
        response = _get(client, "abc")
        assert response.status_code == 401
        assert "OIDC not configured" in response.json()["detail"]


class TestAuthInvalidToken:
    def test_malformed_token(self, client, oidc_env, mock_jwks_fetch):
        response = _get(client, "abc")
        assert response.status_code == 401
        assert "Invalid token" in response.json()["detail"]

    def test_expired_token(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, exp=int(time.time()) - 3600)
        response = _get(client, token)
        assert response.status_code == 401
        assert "Token expired" in response.json()["detail"]

    def test_wrong_issuer(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, iss="https://wrong-issuer.com"))
        assert response.status_code == 401

    def test_wrong_audience(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, aud="wrong-audience"))
        assert response.status_code == 401

    def test_unknown_kid_refetches_once(self, client, oidc_env, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, kid="unknown-key"))
        assert response.status_code == 401
        assert mock_jwks_fetch.call_count == 2

    def test_foreign_signature(self, client, oidc_env, mock_jwks_fetch):
        other_key, _ = _generate_rsa_keypair()
        response = _get(client, _create_token(other_key))
        assert response.status_code == 401

    def test_jwks_unreachable(self, client, oidc_env, rsa_keypair):
        private_key, _ = rsa_keypair
        with patch("lexbill.api.auth._fetch_jwks", side_effect=requests.ConnectionError("down")):
            response = _get(client, _create_token(private_key))
        assert response.status_code == 503


class TestAuthUser:
    def test_user_not_found(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, sub="unknown-user"))
        assert response.status_code == 403
        assert "User not found" in response.json()["detail"]

    def test_valid_token_and_user(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key))
        assert response.status_code == 200
        assert response.json() == []

    def test_jwks_cached(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key)
        _get(client, token)
        _get(client, token)
        assert mock_jwks_fetch.call_count == 1


class TestAuthorizedParties:
    def test_azp_allowed(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user, monkeypatch):
        monkeypatch.setenv("OIDC_AUTHORIZED_PARTIES", "https://app.example.com, https://admin.example.com")
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, azp="https://admin.example.com"))
        assert response.status_code == 200

    def test_azp_rejected(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user, monkeypatch):
        monkeypatch.setenv("OIDC_AUTHORIZED_PARTIES", "https://app.example.com")
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key, azp="https://evil.example.com"))
        assert response.status_code == 401

    def test_azp_absent_is_accepted(self, client, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user, monkeypatch):
        monkeypatch.setenv("OIDC_AUTHORIZED_PARTIES", "https://app.example.com")
        private_key, _ = rsa_keypair
        response = _get(client, _create_token(private_key))
        assert response.status_code == 200
