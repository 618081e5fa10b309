"""
Shared fixtures: settings, provider configuration, a fake OP and an
application wired against it.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from fake_provider import CLIENT_ID, CLIENT_SECRET, ISSUER, FakeOpenIDProvider, make_configuration
from oidc_rp.config import Settings
from oidc_rp.main import create_app


@pytest.fixture
def test_settings():
    """Settings for a confidential client against the fake OP"""
    return Settings(
        _env_file=None,
        OIDC_ISSUER=ISSUER,
        OIDC_CLIENT_ID=CLIENT_ID,
        OIDC_CLIENT_SECRET=CLIENT_SECRET,
        SESSION_SECRET="test-session-secret-that-is-long-enough",
        COOKIE_SECURE=False,
        POST_LOGOUT_REDIRECT_PATH="/auth/logout/callback",
        USE_LOGOUT_STATE=True,
        ROLE_CLAIM_MODE="keycloak",
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def configuration():
    return make_configuration()


@pytest.fixture
def fake_op():
    return FakeOpenIDProvider()


@pytest.fixture
def app_factory(test_settings, configuration, fake_op):
    """Build an app against the fake OP; keyword arguments go to create_app"""

    def factory(settings=None, **kwargs):
        kwargs.setdefault("configuration", configuration)
        kwargs.setdefault("http_client", httpx.AsyncClient(transport=fake_op.transport))
        return create_app(settings or test_settings, **kwargs)

    return factory


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def logged_in_client(client, fake_op):
    fake_op.login(client)
    return client
