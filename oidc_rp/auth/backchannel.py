"""
Back-channel logout (OpenID Connect Back-Channel Logout 1.0).

The OP POSTs a logout token; once validated, its sid is marked logged out
in the LoggedOutSessionStore and the endpoint answers 200 whether or not a
local session is bound to that sid. The affected local sessions are dropped
by the principal binder on their next request.

BackchannelLogoutSessionListener keeps the store in step with local
sessions: bound after authentication, followed through id rotations, and
released when the session is destroyed.
"""

import logging

from fastapi import Request, status
from starlette.responses import Response

from oidc_rp.auth.logged_out_store import LoggedOutSessionStore
from oidc_rp.auth.utils import read_parameters
from oidc_rp.auth.validators import LogoutTokenValidator
from oidc_rp.errors import LogoutTokenError, OIDCError, error_response, log_oidc_error
from oidc_rp.models import SessionInfo
from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)


class BackchannelLogoutHandler:
    """
    Handles logout tokens pushed by the OP.

    Args:
        validator: Logout token validation
        store: Shared logged-out session store
    """

    def __init__(self, validator: LogoutTokenValidator, store: LoggedOutSessionStore):
        self.validator = validator
        self.store = store

    async def handle(self, request: Request) -> Response:
        try:
            params = await read_parameters(request)
            logout_token = params.get("logout_token")
            if not logout_token:
                raise LogoutTokenError("Missing logout_token")

            claims = await self.validator.validate(logout_token)
        except OIDCError as e:
            log_oidc_error(e, request)
            return error_response(e)

        if claims.sid:
            self.store.logout(claims.sid)
        else:
            logger.info(
                "Logout token without sid; no OP session to mark as logged out",
                extra={"sub": claims.sub},
            )

        return Response(status_code=status.HTTP_200_OK, headers={"Cache-Control": "no-store"})


class BackchannelLogoutSessionListener:
    """
    Binds local sessions to their OP session in the logged-out session store.

    Register it both as a session backend listener and as a post-authentication
    hook of the callback.
    """

    def __init__(self, store: LoggedOutSessionStore):
        self.store = store

    def user_authenticated(self, session_info: SessionInfo, session: Session) -> None:
        if session_info.sid:
            self.store.acquire(session_info.sid, session.id)

    def session_id_changed(self, session: Session, old_id: str) -> None:
        session_info = session.session_info
        if session_info is not None and session_info.sid:
            self.store.renew(session_info.sid, old_id, session.id)

    def session_destroyed(self, session: Session) -> None:
        session_info = session.session_info
        if session_info is not None and session_info.sid:
            self.store.release(session_info.sid, session.id)
