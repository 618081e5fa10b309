"""
OP Client Tests

Tests the token, userinfo, revocation, PAR and JWKS calls against an
httpx.MockTransport, including error mapping and the DPoP nonce retry.
"""

import json
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest

from fake_provider import CLIENT_ID, ISSUER, TEST_PRIVATE_KEY, create_mock_jwks, make_configuration, make_id_token
from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.provider import ClientSecretPost, Configuration, NoClientAuthentication, PrivateKeyJWT
from oidc_rp.errors import ProviderRequestError
from oidc_rp.extensions.dpop import DPoPSupport, SingleDPoPNonceStore
from oidc_rp.models import OIDCTokens

TOKEN_RESPONSE = {
    "access_token": "access-token-1",
    "token_type": "Bearer",
    "expires_in": 300,
}


class Recorder:
    """MockTransport handler replaying canned responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def form(self, index: int = 0) -> dict:
        return dict(parse_qsl(self.requests[index].content.decode("utf-8")))


def make_client(recorder, configuration=None, **kwargs) -> OIDCClient:
    return OIDCClient(
        configuration or make_configuration(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        **kwargs,
    )


def token_response(**overrides):
    body = dict(TOKEN_RESPONSE, id_token=make_id_token(nonce="n-1"))
    body.update(overrides)
    return httpx.Response(200, json=body)


class TestTokenExchange:
    """Test suite for the authorization code exchange"""

    @pytest.mark.asyncio
    async def test_exchange(self):
        recorder = Recorder(token_response())
        client = make_client(recorder)

        tokens = await client.exchange_authorization_code("code-1", "https://app.example.com/cb", "verifier-1")

        assert tokens.access_token == "access-token-1"
        assert tokens.is_dpop_bound is False
        request = recorder.requests[0]
        assert str(request.url) == f"{ISSUER}/token"
        assert request.headers["authorization"].startswith("Basic ")
        assert recorder.form() == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": "https://app.example.com/cb",
            "code_verifier": "verifier-1",
        }

    @pytest.mark.asyncio
    async def test_client_secret_post(self):
        configuration = Configuration(
            provider_metadata=make_configuration().provider_metadata,
            client_id=CLIENT_ID,
            client_authentication=ClientSecretPost(CLIENT_ID, "s3cret"),
            client_secret="s3cret",
        )
        recorder = Recorder(token_response())

        await make_client(recorder, configuration).exchange_authorization_code("c", "https://app/cb", "v")

        form = recorder.form()
        assert form["client_id"] == CLIENT_ID
        assert form["client_secret"] == "s3cret"
        assert "authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_public_client(self):
        configuration = Configuration(
            provider_metadata=make_configuration().provider_metadata,
            client_id=CLIENT_ID,
            client_authentication=NoClientAuthentication(CLIENT_ID),
        )
        recorder = Recorder(token_response())

        await make_client(recorder, configuration).exchange_authorization_code("c", "https://app/cb", "v")

        assert recorder.form()["client_id"] == CLIENT_ID
        assert "client_secret" not in recorder.form()

    @pytest.mark.asyncio
    async def test_private_key_jwt_assertion_per_request(self):
        configuration = Configuration(
            provider_metadata=make_configuration().provider_metadata,
            client_id=CLIENT_ID,
            client_authentication=PrivateKeyJWT(CLIENT_ID, TEST_PRIVATE_KEY, key_id="client-key"),
        )
        recorder = Recorder(token_response(), token_response())
        client = make_client(recorder, configuration)

        await client.exchange_authorization_code("c1", "https://app/cb", "v")
        await client.exchange_authorization_code("c2", "https://app/cb", "v")

        first = recorder.form(0)["client_assertion"]
        second = recorder.form(1)["client_assertion"]
        assert first != second
        claims = jwt.decode(first, options={"verify_signature": False})
        assert claims["iss"] == claims["sub"] == CLIENT_ID
        assert claims["aud"] == ISSUER

    @pytest.mark.asyncio
    async def test_error_response(self):
        recorder = Recorder(httpx.Response(400, json={"error": "invalid_grant", "error_description": "expired"}))

        with pytest.raises(ProviderRequestError) as exc_info:
            await make_client(recorder).exchange_authorization_code("c", "https://app/cb", "v")

        assert exc_info.value.message == "Token request returned error: invalid_grant"
        assert exc_info.value.details["error_description"] == "expired"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_network_error(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderRequestError) as exc_info:
            await make_client(recorder).exchange_authorization_code("c", "https://app/cb", "v")

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_missing_id_token(self):
        recorder = Recorder(httpx.Response(200, json=TOKEN_RESPONSE))

        with pytest.raises(ProviderRequestError):
            await make_client(recorder).exchange_authorization_code("c", "https://app/cb", "v")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        recorder = Recorder(httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(ProviderRequestError):
            await make_client(recorder).exchange_authorization_code("c", "https://app/cb", "v")


class TestUserInfo:
    """Test suite for the userinfo call"""

    @pytest.mark.asyncio
    async def test_json_userinfo(self):
        recorder = Recorder(httpx.Response(200, json={"sub": "user-123", "email": "user@example.com"}))

        userinfo = await make_client(recorder).fetch_userinfo(OIDCTokens(id_token="id", access_token="at"))

        assert userinfo["email"] == "user@example.com"
        assert recorder.requests[0].headers["authorization"] == "Bearer at"

    @pytest.mark.asyncio
    async def test_jwt_userinfo(self):
        signed = jwt.encode({"sub": "user-123", "name": "Signed"}, TEST_PRIVATE_KEY, algorithm="RS256")
        recorder = Recorder(httpx.Response(200, content=signed.encode(), headers={"Content-Type": "application/jwt"}))

        userinfo = await make_client(recorder).fetch_userinfo(OIDCTokens(id_token="id", access_token="at"))

        assert userinfo == {"sub": "user-123", "name": "Signed"}

    @pytest.mark.asyncio
    async def test_no_userinfo_endpoint(self):
        recorder = Recorder()
        client = make_client(recorder, make_configuration(userinfo_endpoint=None))

        assert await client.fetch_userinfo(OIDCTokens(id_token="id", access_token="at")) == {}
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_error_from_www_authenticate(self):
        recorder = Recorder(httpx.Response(401, headers={"WWW-Authenticate": 'Bearer error="invalid_token"'}))

        with pytest.raises(ProviderRequestError) as exc_info:
            await make_client(recorder).fetch_userinfo(OIDCTokens(id_token="id", access_token="at"))

        assert exc_info.value.details["error"] == "invalid_token"


class TestOtherEndpoints:
    """Test suite for revocation, PAR and JWKS"""

    @pytest.mark.asyncio
    async def test_revoke_token(self):
        recorder = Recorder(httpx.Response(200))

        await make_client(recorder).revoke_token("refresh-1", "refresh_token")

        assert str(recorder.requests[0].url) == f"{ISSUER}/revoke"
        assert recorder.form() == {"token": "refresh-1", "token_type_hint": "refresh_token"}

    @pytest.mark.asyncio
    async def test_revoke_without_endpoint(self):
        client = make_client(Recorder(), make_configuration(revocation_endpoint=None))

        with pytest.raises(ProviderRequestError):
            await client.revoke_token("t")

    @pytest.mark.asyncio
    async def test_push_authorization_request_requires_request_uri(self):
        recorder = Recorder(httpx.Response(201, json={"expires_in": 60}))

        with pytest.raises(ProviderRequestError):
            await make_client(recorder).push_authorization_request({"response_type": "code"})

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self):
        recorder = Recorder(
            httpx.Response(200, json=create_mock_jwks()),
            httpx.Response(200, json=create_mock_jwks(kid="rotated")),
        )
        client = make_client(recorder)

        first = await client.fetch_jwks()
        cached = await client.fetch_jwks()
        refreshed = await client.fetch_jwks(force_refresh=True)

        assert first is cached
        assert refreshed["keys"][0]["kid"] == "rotated"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_invalid_jwks(self):
        recorder = Recorder(httpx.Response(200, json={"no": "keys"}))

        with pytest.raises(ProviderRequestError):
            await make_client(recorder).fetch_jwks()


class TestDPoP:
    """Test suite for DPoP-bound requests"""

    @pytest.mark.asyncio
    async def test_token_request_carries_proof(self):
        dpop_support = DPoPSupport.create()
        recorder = Recorder(token_response(token_type="DPoP"))

        tokens = await make_client(recorder, dpop_support=dpop_support).exchange_authorization_code(
            "c", "https://app/cb", "v"
        )

        assert tokens.is_dpop_bound is True
        proof = recorder.requests[0].headers["dpop"]
        header = jwt.get_unverified_header(proof)
        assert header["typ"] == "dpop+jwt"
        claims = jwt.decode(proof, options={"verify_signature": False})
        assert claims["htm"] == "POST"
        assert claims["htu"] == f"{ISSUER}/token"
        assert "nonce" not in claims

    @pytest.mark.asyncio
    async def test_use_dpop_nonce_retries_once(self):
        """
        Test the DPoP nonce challenge:
        - First attempt answers 400 use_dpop_nonce with a DPoP-Nonce header
        - The request is repeated once with the nonce in a fresh proof
        """
        dpop_support = DPoPSupport.create()
        recorder = Recorder(
            httpx.Response(400, json={"error": "use_dpop_nonce"}, headers={"DPoP-Nonce": "nonce-1"}),
            token_response(token_type="DPoP"),
        )

        await make_client(recorder, dpop_support=dpop_support).exchange_authorization_code("c", "https://app/cb", "v")

        assert len(recorder.requests) == 2
        first = jwt.decode(recorder.requests[0].headers["dpop"], options={"verify_signature": False})
        second = jwt.decode(recorder.requests[1].headers["dpop"], options={"verify_signature": False})
        assert "nonce" not in first
        assert second["nonce"] == "nonce-1"
        assert first["jti"] != second["jti"]

    @pytest.mark.asyncio
    async def test_repeated_nonce_challenge_is_not_retried_again(self):
        dpop_support = DPoPSupport.create()
        challenge = {"error": "use_dpop_nonce"}
        recorder = Recorder(
            httpx.Response(400, json=challenge, headers={"DPoP-Nonce": "nonce-1"}),
            httpx.Response(400, json=challenge, headers={"DPoP-Nonce": "nonce-2"}),
        )

        with pytest.raises(ProviderRequestError) as exc_info:
            await make_client(recorder, dpop_support=dpop_support).exchange_authorization_code(
                "c", "https://app/cb", "v"
            )

        assert exc_info.value.message == "Token request returned error: use_dpop_nonce"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_userinfo_with_dpop_bound_token(self):
        dpop_support = DPoPSupport.create(nonce_store=SingleDPoPNonceStore())
        recorder = Recorder(
            httpx.Response(
                401,
                headers={"WWW-Authenticate": 'DPoP error="use_dpop_nonce"', "DPoP-Nonce": "nonce-9"},
            ),
            httpx.Response(200, content=json.dumps({"sub": "user-123"}).encode(), headers={"Content-Type": "application/json"}),
        )
        tokens = OIDCTokens(id_token="id", access_token="dpop-at", token_type="DPoP")

        userinfo = await make_client(recorder, dpop_support=dpop_support).fetch_userinfo(tokens)

        assert userinfo == {"sub": "user-123"}
        request = recorder.requests[1]
        assert request.headers["authorization"] == "DPoP dpop-at"
        claims = jwt.decode(request.headers["dpop"], options={"verify_signature": False})
        assert claims["htm"] == "GET"
        assert claims["nonce"] == "nonce-9"
        assert "ath" in claims
