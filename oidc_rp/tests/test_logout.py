"""
Logout Tests

Tests RP-initiated logout: local session invalidation, the end-session
redirect, the state-protected logout round trip, cross-origin protection
and background token revocation.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from fake_provider import CLIENT_ID, ISSUER, make_configuration, query_params
from oidc_rp.auth.tokens import RevokingOAuthTokensHandler
from oidc_rp.errors import ProviderRequestError
from oidc_rp.models import OIDCTokens

SAME_ORIGIN = {"Origin": "http://testserver"}


class TestLogoutInitiation:
    """Test suite for the logout POST"""

    def test_redirects_to_end_session_endpoint(self, logged_in_client):
        """
        Test RP-initiated logout:
        - 303 to the OP end-session endpoint
        - id_token_hint, client_id, post_logout_redirect_uri and state are sent
        - The local session is gone before the OP is even contacted
        """
        response = logged_in_client.post("/auth/logout", headers=SAME_ORIGIN)

        assert response.status_code == 303
        location = response.headers["location"]
        assert location.startswith(f"{ISSUER}/logout?")
        params = query_params(location)
        assert params["client_id"] == CLIENT_ID
        assert params["id_token_hint"].count(".") == 2
        assert params["post_logout_redirect_uri"] == "http://testserver/auth/logout/callback"
        assert params["state"]

        assert logged_in_client.get("/me").status_code == 303

    def test_logout_round_trip(self, logged_in_client):
        response = logged_in_client.post(
            "/auth/logout",
            data={"return-to": "/goodbye"},
            headers=SAME_ORIGIN,
        )
        state = query_params(response.headers["location"])["state"]

        back = logged_in_client.get("/auth/logout/callback", params={"state": state})

        assert back.status_code == 303
        assert back.headers["location"] == "/goodbye"

    def test_logout_callback_is_single_use(self, logged_in_client):
        response = logged_in_client.post("/auth/logout", headers=SAME_ORIGIN)
        state = query_params(response.headers["location"])["state"]
        assert logged_in_client.get("/auth/logout/callback", params={"state": state}).status_code == 303

        replay = logged_in_client.get("/auth/logout/callback", params={"state": state})

        assert replay.status_code == 400
        assert replay.json()["message"] == "Missing saved state from logout request initiation"

    def test_logout_callback_state_mismatch(self, logged_in_client):
        logged_in_client.post("/auth/logout", headers=SAME_ORIGIN)

        response = logged_in_client.get("/auth/logout/callback", params={"state": "forged"})

        assert response.status_code == 400
        assert response.json()["message"] == "State mismatch"

    def test_logout_callback_without_logout(self, client):
        response = client.get("/auth/logout/callback", params={"state": "anything"})

        assert response.status_code == 400

    def test_cross_origin_logout_is_ignored(self, logged_in_client):
        response = logged_in_client.post(
            "/auth/logout",
            headers={"Origin": "https://evil.example.net"},
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/"
        assert logged_in_client.get("/me").status_code == 200

    def test_logout_without_origin_information_is_ignored(self, logged_in_client):
        response = logged_in_client.post("/auth/logout")

        assert response.headers["location"] == "/"
        assert logged_in_client.get("/me").status_code == 200

    def test_scripted_logout_is_rejected(self, logged_in_client):
        response = logged_in_client.post(
            "/auth/logout",
            headers={**SAME_ORIGIN, "Sec-Fetch-Mode": "cors"},
        )

        assert response.status_code == 400
        assert logged_in_client.get("/me").status_code == 200

    def test_logout_requires_post(self, logged_in_client):
        assert logged_in_client.get("/auth/logout").status_code == 405

    def test_anonymous_logout(self, client):
        response = client.post("/auth/logout", headers=SAME_ORIGIN)

        assert response.status_code == 303
        assert response.headers["location"] == "/"

    def test_logout_without_end_session_endpoint(self, app_factory, fake_op):
        client = TestClient(
            app_factory(configuration=make_configuration(end_session_endpoint=None)),
            follow_redirects=False,
        )
        fake_op.login(client)

        response = client.post("/auth/logout?return-to=/bye", headers=SAME_ORIGIN)

        assert response.status_code == 303
        assert response.headers["location"] == "/bye"
        assert client.get("/me").status_code == 303

    def test_logout_without_logout_state(self, app_factory, test_settings, fake_op):
        settings = test_settings.model_copy(
            update={"USE_LOGOUT_STATE": False, "POST_LOGOUT_REDIRECT_PATH": None}
        )
        client = TestClient(app_factory(settings), follow_redirects=False)
        fake_op.login(client)

        response = client.post("/auth/logout", headers=SAME_ORIGIN)

        params = query_params(response.headers["location"])
        assert set(params) == {"id_token_hint", "client_id"}

    def test_logout_invalidates_session_without_backchannel_store(self, app_factory, test_settings, fake_op):
        settings = test_settings.model_copy(update={"ENABLE_BACKCHANNEL_LOGOUT": False})
        client = TestClient(app_factory(settings), follow_redirects=False)
        fake_op.login(client)

        client.post("/auth/logout", headers=SAME_ORIGIN)

        assert client.get("/me").status_code == 303


class TestTokenRevocation:
    """Test suite for background revocation"""

    def test_tokens_revoked_on_logout(self, app_factory, test_settings, fake_op):
        """
        Test revocation on logout:
        - Refresh and access tokens are revoked at the OP
        - The logout redirect does not depend on revocation
        """
        settings = test_settings.model_copy(update={"REVOKE_TOKENS_ON_LOGOUT": True})
        with TestClient(app_factory(settings), follow_redirects=False) as client:
            fake_op.login(client)
            response = client.post("/auth/logout", headers=SAME_ORIGIN)
            assert response.status_code == 303

        revoked = [query_params("?" + r.content.decode("utf-8")) for r in fake_op.requests_to("/revoke")]
        assert {(r["token"], r["token_type_hint"]) for r in revoked} == {
            ("refresh-token-1", "refresh_token"),
            ("access-token-1", "access_token"),
        }

    def test_revocation_failure_does_not_affect_logout(self, app_factory, test_settings, fake_op):
        fake_op.revocation_status = 503
        settings = test_settings.model_copy(update={"REVOKE_TOKENS_ON_LOGOUT": True})
        with TestClient(app_factory(settings), follow_redirects=False) as client:
            fake_op.login(client)
            response = client.post("/auth/logout", headers=SAME_ORIGIN)

            assert response.status_code == 303
            assert response.headers["location"].startswith(f"{ISSUER}/logout?")

    @pytest.mark.asyncio
    async def test_error_hook_receives_failure(self):
        client = Mock()
        failure = ProviderRequestError("Revocation request returned error: http_503")
        client.revoke_token = AsyncMock(side_effect=failure)
        on_error = Mock()
        handler = RevokingOAuthTokensHandler(client, on_error=on_error)

        await handler.revoke_async("access-token-1", "access_token")

        on_error.assert_called_once_with(failure, "access_token")

    @pytest.mark.asyncio
    async def test_failing_error_hook_is_contained(self):
        client = Mock()
        client.revoke_token = AsyncMock(side_effect=ProviderRequestError("boom"))
        handler = RevokingOAuthTokensHandler(client, on_error=Mock(side_effect=RuntimeError("hook")))

        await handler.revoke_async("access-token-1")

    @pytest.mark.asyncio
    async def test_revoke_tokens_without_refresh_token(self):
        client = Mock()
        client.revoke_token = AsyncMock()
        handler = RevokingOAuthTokensHandler(client)

        handler.revoke_tokens_async(OIDCTokens(id_token="id", access_token="at"))
        await handler.drain()

        client.revoke_token.assert_awaited_once_with("at", "access_token")
