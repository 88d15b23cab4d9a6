"""Shared pytest fixtures for LexBill tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset global JWKS cache to avoid cross-test contamination."""
    import lexbill.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture(autouse=True)
def _reset_settings_and_gateway():
    """Settings and gateway are process-wide singletons."""
    import lexbill.api.deps as deps_module
    from lexbill.config import reset_settings

    reset_settings()
    deps_module._gateway = None
    yield
    reset_settings()
    deps_module._gateway = None
