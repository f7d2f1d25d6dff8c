"""
Shared fixtures for the reverse proxy test suite.
"""

import pytest

from gateway.app.config import Settings


BASE_ENV = {
    "RP_TARGET_URL": "http://origin.test:9000/base",
    "RP_PORT": ":8080",
    "RP_HEADER_KEY": "X-ContentKey",
    "RP_HEADER_KEY_VAL": "OK",
}

AUTH_HEADERS = {"X-ContentKey": "OK"}


@pytest.fixture
def make_settings():
    """Build Settings from the base scenario plus overrides, ignoring any .env file"""
    def _make(**overrides) -> Settings:
        return Settings(_env_file=None, **{**BASE_ENV, **overrides})
    return _make


@pytest.fixture
def settings(make_settings):
    """Settings for scenario 1: origin.test:9000/base guarded by X-ContentKey: OK"""
    return make_settings()


@pytest.fixture
def auth_headers():
    """Headers carrying the shared secret"""
    return dict(AUTH_HEADERS)
