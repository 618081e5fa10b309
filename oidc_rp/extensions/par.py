"""
Pushed Authorization Requests (RFC 9126).

The authorization request parameters are POSTed to the OP, authenticated
as the client, and the browser only carries client_id and the returned
request_uri. A failed push is a hard error: no redirect is issued.
"""

import logging
from urllib.parse import urlencode

from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.redirector import AuthorizationRequest

logger = logging.getLogger(__name__)


class PushedAuthorizationRequestHelper:
    """
    AuthorizationRequestSender pushing the request to the PAR endpoint.

    Args:
        client: OP client used for the authenticated push
    """

    def __init__(self, client: OIDCClient):
        self.client = client

    async def build_redirect_uri(self, authorization_request: AuthorizationRequest) -> str:
        """
        Push the request and build the front-channel URI referencing it.

        Raises:
            ProviderRequestError: If the push fails
        """
        response = await self.client.push_authorization_request(authorization_request.params)

        logger.debug(
            "Pushed authorization request",
            extra={"expires_in": response.get("expires_in")},
        )
        query = {
            "client_id": self.client.configuration.client_id,
            "request_uri": response["request_uri"],
        }
        separator = "&" if "?" in authorization_request.endpoint else "?"
        return f"{authorization_request.endpoint}{separator}{urlencode(query)}"
