"""
Back-Channel Logout Tests

Tests the back-channel logout endpoint end to end (logout token in, local
sessions invalidated on their next request) and the listener keeping the
logged-out session store in step with local sessions.
"""

from unittest.mock import Mock

from fastapi.testclient import TestClient

from fake_provider import make_logout_token, make_unsecured_token
from oidc_rp.auth.backchannel import BackchannelLogoutSessionListener
from oidc_rp.models import OIDCTokens, SessionInfo
from oidc_rp.session.models import Session


def post_logout_token(client, token):
    return client.post("/auth/backchannel-logout", data={"logout_token": token})


class TestBackchannelLogoutEndpoint:
    """Test suite for the endpoint as wired by create_app"""

    def test_logout_token_invalidates_session(self, app, logged_in_client):
        """
        Test back-channel logout:
        - 200 with Cache-Control: no-store and an empty body
        - The sid is marked logged out
        - The browser session is dropped on its next request
        """
        assert logged_in_client.get("/me").status_code == 200
        store = app.state.rp.logged_out_session_store
        assert store.is_logged_out("op-session-1") is False

        response = post_logout_token(TestClient(app), make_logout_token(sid="op-session-1"))

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.content == b""
        assert store.is_logged_out("op-session-1") is True
        assert logged_in_client.get("/me").status_code == 303

    def test_all_sessions_of_the_op_session_are_logged_out(self, app, fake_op):
        first = TestClient(app, follow_redirects=False)
        second = TestClient(app, follow_redirects=False)
        fake_op.login(first)
        fake_op.login(second)

        post_logout_token(TestClient(app), make_logout_token(sid="op-session-1"))

        assert first.get("/me").status_code == 303
        assert second.get("/me").status_code == 303

    def test_other_op_session_is_untouched(self, app, logged_in_client):
        response = post_logout_token(TestClient(app), make_logout_token(sid="another-op-session"))

        assert response.status_code == 200
        assert logged_in_client.get("/me").status_code == 200

    def test_sub_only_token_is_accepted(self, app, logged_in_client):
        response = post_logout_token(TestClient(app), make_logout_token(sid=None))

        assert response.status_code == 200
        assert logged_in_client.get("/me").status_code == 200

    def test_unknown_sid_still_answers_200(self, client):
        response = post_logout_token(client, make_logout_token(sid="never-seen"))

        assert response.status_code == 200

    def test_missing_logout_token(self, client):
        response = client.post("/auth/backchannel-logout", data={})

        assert response.status_code == 400
        assert response.json()["message"] == "Missing logout_token"
        assert response.headers["cache-control"] == "no-store"

    def test_unsecured_token_is_rejected(self, app, logged_in_client):
        token = make_unsecured_token({"sid": "op-session-1"})

        response = post_logout_token(TestClient(app), token)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert logged_in_client.get("/me").status_code == 200

    def test_typed_tokens_required(self, app_factory, test_settings):
        settings = test_settings.model_copy(update={"LOGOUT_TOKEN_REQUIRE_TYPED": True})
        client = TestClient(app_factory(settings))

        assert post_logout_token(client, make_logout_token(typ=None)).status_code == 400
        assert post_logout_token(client, make_logout_token(typ="logout+jwt")).status_code == 200

    def test_sessions_survive_without_backchannel_store(self, app_factory, test_settings, fake_op):
        settings = test_settings.model_copy(update={"ENABLE_BACKCHANNEL_LOGOUT": False})
        app = app_factory(settings)
        browser = TestClient(app, follow_redirects=False)
        fake_op.login(browser)

        response = post_logout_token(TestClient(app), make_logout_token(sid="op-session-1"))

        assert response.status_code == 200
        assert browser.get("/me").status_code == 200

    def test_local_logout_releases_op_session(self, app, logged_in_client):
        store = app.state.rp.logged_out_session_store

        logged_in_client.post("/auth/logout", headers={"Origin": "http://testserver"})

        assert store.is_logged_out("op-session-1") is True
        assert len(store) == 0


class TestBackchannelLogoutSessionListener:
    """Test suite for store bookkeeping driven by session events"""

    @staticmethod
    def authenticated_session(sid="op-session-1"):
        session = Session("session-a")
        claims = {"sub": "user-123"}
        if sid:
            claims["sid"] = sid
        session.session_info = SessionInfo(
            tokens=OIDCTokens(id_token="id", access_token="at"),
            id_token_claims=claims,
        )
        return session

    def test_user_authenticated_acquires(self):
        store = Mock()
        listener = BackchannelLogoutSessionListener(store)
        session = self.authenticated_session()

        listener.user_authenticated(session.session_info, session)

        store.acquire.assert_called_once_with("op-session-1", "session-a")

    def test_id_change_renews(self):
        store = Mock()
        listener = BackchannelLogoutSessionListener(store)
        session = self.authenticated_session()
        session.id = "session-b"

        listener.session_id_changed(session, "session-a")

        store.renew.assert_called_once_with("op-session-1", "session-a", "session-b")

    def test_destroy_releases(self):
        store = Mock()
        listener = BackchannelLogoutSessionListener(store)

        listener.session_destroyed(self.authenticated_session())

        store.release.assert_called_once_with("op-session-1", "session-a")

    def test_sessions_without_sid_are_ignored(self):
        store = Mock()
        listener = BackchannelLogoutSessionListener(store)
        session = self.authenticated_session(sid=None)

        listener.user_authenticated(session.session_info, session)
        listener.session_id_changed(session, "old")
        listener.session_destroyed(session)
        listener.session_destroyed(Session("anonymous"))

        store.acquire.assert_not_called()
        store.renew.assert_not_called()
        store.release.assert_not_called()
