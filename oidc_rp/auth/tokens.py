"""
What happens to OAuth tokens once they are acquired or no longer needed.

RevokingOAuthTokensHandler revokes tokens at the OP on a separate asyncio
task so the user-visible response never waits on the revocation endpoint;
failures are handed to an error hook and never reach the browser.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol, Set

from oidc_rp.auth.client import OIDCClient
from oidc_rp.models import OIDCTokens
from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)


class OAuthTokensHandler(Protocol):
    def tokens_acquired(self, tokens: OIDCTokens, session: Session) -> None:
        ...


def log_revocation_error(exc: BaseException, token_type_hint: Optional[str]) -> None:
    logger.error(
        f"Token revocation failed: {exc}",
        extra={"token_type_hint": token_type_hint},
        exc_info=exc,
    )


class RevokingOAuthTokensHandler:
    """
    Revokes tokens in the background.

    Used as the tokens handler of the callback it revokes the access token
    as soon as authentication completes (for apps that only need the ID
    token). The logout initiator also uses it to revoke the tokens of a
    session being logged out.

    Args:
        client: OP client performing the revocation
        on_error: Called with (exception, token_type_hint) when a revocation fails
    """

    def __init__(
        self,
        client: OIDCClient,
        on_error: Callable[[BaseException, Optional[str]], None] = log_revocation_error,
    ):
        self.client = client
        self.on_error = on_error
        self._tasks: Set[asyncio.Task] = set()

    def tokens_acquired(self, tokens: OIDCTokens, session: Session) -> None:
        self.revoke_async(tokens.access_token, "access_token")

    def revoke_tokens_async(self, tokens: OIDCTokens) -> None:
        """Revoke the refresh token (if any) and the access token."""
        if tokens.refresh_token:
            self.revoke_async(tokens.refresh_token, "refresh_token")
        self.revoke_async(tokens.access_token, "access_token")

    def revoke_async(self, token: str, token_type_hint: Optional[str] = None) -> asyncio.Task:
        """
        Schedule the revocation of one token and return immediately.

        Returns:
            The background task (kept referenced until it completes)
        """
        task = asyncio.get_running_loop().create_task(self._revoke(token, token_type_hint))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _revoke(self, token: str, token_type_hint: Optional[str]) -> None:
        try:
            await self.client.revoke_token(token, token_type_hint)
            logger.debug("Token revoked", extra={"token_type_hint": token_type_hint})
        except Exception as e:
            try:
                self.on_error(e, token_type_hint)
            except Exception:
                logger.error("Revocation error hook failed", exc_info=True)

    async def drain(self) -> None:
        """Wait for pending revocations (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
