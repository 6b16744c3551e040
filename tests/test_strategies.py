"""
Tests for protocol strategies and the strategy registry.
"""

import base64
import hashlib
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.integrations.httpx_client import OAuthError

from config.settings import config
from oauth.base import parse_expires_in, states_match, to_provider_error
from oauth.client_credentials import fetch_client_credentials_token
from oauth.flow import FlowSession, ProtocolKind
from oauth.oauth1 import OAuth1Strategy
from oauth.oauth2 import OAuth2Strategy
from oauth.registry import StrategyRegistry
from oauth.schemas import CallbackParams
from oauth.twitter import TwitterPKCEStrategy
from utils.errors import ProviderError, ValidationError


def _oauth2_flow(**kw) -> FlowSession:
    data = dict(
        provider="github",
        kind=ProtocolKind.OAUTH2,
        team_id="t",
        entry_prefix="GH",
        client_id="id1",
        client_secret="sec1",
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        callback_url="https://broker.example/oauth/github/callback",
        scopes=["repo", "user"],
    )
    data.update(kw)
    return FlowSession(**data)


class TestRegistry:
    def setup_method(self):
        StrategyRegistry.reset()

    def test_defaults_per_kind(self):
        registry = StrategyRegistry()
        assert isinstance(registry.resolve("github", ProtocolKind.OAUTH2), OAuth2Strategy)
        assert isinstance(registry.resolve("trello", ProtocolKind.OAUTH1), OAuth1Strategy)

    def test_provider_override(self):
        registry = StrategyRegistry()
        assert isinstance(registry.resolve("twitter", ProtocolKind.OAUTH2), TwitterPKCEStrategy)
        assert isinstance(registry.resolve("X", ProtocolKind.OAUTH2), TwitterPKCEStrategy)

    def test_override_is_kind_specific(self):
        registry = StrategyRegistry()
        assert isinstance(registry.resolve("twitter", ProtocolKind.OAUTH1), OAuth1Strategy)

    def test_unsupported_kind(self):
        with pytest.raises(ValidationError):
            StrategyRegistry().resolve("svc", ProtocolKind.CLIENT_CREDENTIALS)

    def test_singleton(self):
        assert StrategyRegistry() is StrategyRegistry()


class TestHelpers:
    def test_states_match(self):
        assert states_match("abc", "abc")
        assert not states_match("abc", "abd")
        assert not states_match(None, None)
        assert not states_match("abc", "")

    def test_parse_expires_in(self):
        assert parse_expires_in(3600) == 3600
        assert parse_expires_in("7200") == 7200
        assert parse_expires_in(None) is None
        assert parse_expires_in("soon") is None

    def test_http_status_is_mapped(self):
        request = httpx.Request("POST", "https://p.example/token")
        response = httpx.Response(403, request=request)
        err = to_provider_error(httpx.HTTPStatusError("x", request=request, response=response))
        assert err.upstream_status == 403
        assert err.message == "Forbidden. Access is denied."

    def test_oauth_error_keeps_code(self):
        err = to_provider_error(OAuthError(error="invalid_grant", description="Code expired"))
        assert err.message == "Code expired (Error code: invalid_grant)"


class TestOAuth2Strategy:
    @pytest.mark.asyncio
    async def test_auth_url(self):
        flow = _oauth2_flow()
        url = await OAuth2Strategy().build_auth_url(flow)

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert query["client_id"] == ["id1"]
        assert query["state"] == [flow.csrf_state]
        assert query["scope"] == ["repo user"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]

    @pytest.mark.asyncio
    async def test_state_is_fresh_per_attempt(self):
        flow = _oauth2_flow()
        strategy = OAuth2Strategy()
        await strategy.build_auth_url(flow)
        first = flow.csrf_state
        await strategy.build_auth_url(flow)
        assert flow.csrf_state != first

    def test_verify_callback(self):
        flow = _oauth2_flow(csrf_state="s1")
        strategy = OAuth2Strategy()
        assert strategy.verify_callback(flow, CallbackParams(code="c", state="s1"))
        assert not strategy.verify_callback(flow, CallbackParams(code="c", state="s2"))

    @pytest.mark.asyncio
    async def test_exchange(self):
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth2Client.fetch_token",
            new_callable=AsyncMock,
            return_value={"access_token": "at", "refresh_token": "rt", "expires_in": "3600"},
        ) as mock_fetch:
            tokens = await OAuth2Strategy().exchange_token(_oauth2_flow(), CallbackParams(code="c"))

        mock_fetch.assert_awaited_once()
        assert tokens.primary == "at"
        assert tokens.secondary == "rt"
        assert tokens.expires_in == 3600

    @pytest.mark.asyncio
    async def test_exchange_error_is_mapped(self):
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth2Client.fetch_token",
            new_callable=AsyncMock,
            side_effect=OAuthError(error="invalid_grant", description="bad code"),
        ):
            with pytest.raises(ProviderError, match="invalid_grant"):
                await OAuth2Strategy().exchange_token(_oauth2_flow(), CallbackParams(code="c"))

    @pytest.mark.asyncio
    async def test_missing_code(self):
        with pytest.raises(ProviderError):
            await OAuth2Strategy().exchange_token(_oauth2_flow(), CallbackParams(state="s"))


class TestOAuth1Strategy:
    def _flow(self, **kw) -> FlowSession:
        data = dict(
            provider="trello",
            kind=ProtocolKind.OAUTH1,
            team_id="t",
            entry_prefix="TRELLO",
            consumer_key="ck",
            consumer_secret="cs",
            request_token_url="https://trello.com/1/OAuthGetRequestToken",
            authorization_url="https://trello.com/1/OAuthAuthorizeToken",
            access_token_url="https://trello.com/1/OAuthGetAccessToken",
            callback_url="https://broker.example/oauth/trello/callback",
        )
        data.update(kw)
        return FlowSession(**data)

    @pytest.mark.asyncio
    async def test_auth_url_binds_request_token(self):
        flow = self._flow()
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth1Client.fetch_request_token",
            new_callable=AsyncMock,
            return_value={"oauth_token": "rt", "oauth_token_secret": "rts"},
        ):
            url = await OAuth1Strategy().build_auth_url(flow)

        assert parse_qs(urlparse(url).query)["oauth_token"] == ["rt"]
        assert flow.request_token == "rt"
        assert flow.request_token_secret == "rts"

    def test_callback_binding(self):
        flow = self._flow(request_token="rt")
        strategy = OAuth1Strategy()
        assert strategy.verify_callback(flow, CallbackParams(oauth_token="rt", oauth_verifier="v"))
        assert not strategy.verify_callback(flow, CallbackParams(oauth_token="other", oauth_verifier="v"))

    @pytest.mark.asyncio
    async def test_exchange(self):
        flow = self._flow(request_token="rt", request_token_secret="rts")
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth1Client.fetch_access_token",
            new_callable=AsyncMock,
            return_value={"oauth_token": "at", "oauth_token_secret": "ats"},
        ) as mock_fetch:
            tokens = await OAuth1Strategy().exchange_token(
                flow, CallbackParams(oauth_token="rt", oauth_verifier="v")
            )

        assert mock_fetch.await_args.kwargs["verifier"] == "v"
        assert tokens.primary == "at"
        assert tokens.secondary == "ats"
        assert tokens.expires_in is None


class TestTwitterPKCE:
    @pytest.mark.asyncio
    async def test_challenge_matches_verifier(self):
        flow = _oauth2_flow(provider="twitter", scopes=["tweet.read", "users.read"])
        url = await TwitterPKCEStrategy().build_auth_url(flow)

        query = parse_qs(urlparse(url).query)
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(flow.code_verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert url.startswith(config.twitter_authorize_url)
        assert query["code_challenge"] == [expected]
        assert query["code_challenge_method"] == ["S256"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [flow.csrf_state]
        assert query["scope"] == ["tweet.read users.read"]
        assert "=" not in query["code_challenge"][0]
        assert len(flow.code_verifier) == 43

    @pytest.mark.asyncio
    async def test_verifier_is_fresh_per_attempt(self):
        flow = _oauth2_flow(provider="twitter")
        strategy = TwitterPKCEStrategy()
        await strategy.build_auth_url(flow)
        first = (flow.code_verifier, flow.csrf_state)
        await strategy.build_auth_url(flow)
        assert (flow.code_verifier, flow.csrf_state) != first

    @pytest.mark.asyncio
    async def test_exchange_sends_verifier_with_basic_auth(self):
        flow = _oauth2_flow(provider="twitter", code_verifier="v" * 43)
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json.return_value = {"access_token": "at", "refresh_token": "rt", "expires_in": 7200}

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response) as mock_post:
            tokens = await TwitterPKCEStrategy().exchange_token(flow, CallbackParams(code="c", state="s"))

        kwargs = mock_post.await_args.kwargs
        assert kwargs["data"]["code_verifier"] == "v" * 43
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["auth"] == ("id1", "sec1")
        assert tokens.primary == "at"
        assert tokens.expires_in == 7200


class TestClientCredentials:
    @pytest.mark.asyncio
    async def test_fetch(self):
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth2Client.fetch_token",
            new_callable=AsyncMock,
            return_value={"access_token": "at", "expires_in": 60},
        ) as mock_fetch:
            tokens = await fetch_client_credentials_token("id", "secret", "https://p.example/token")

        assert mock_fetch.await_args.kwargs["grant_type"] == "client_credentials"
        assert tokens.primary == "at"
        assert tokens.expires_in == 60

    @pytest.mark.asyncio
    async def test_no_access_token(self):
        with patch(
            "authlib.integrations.httpx_client.AsyncOAuth2Client.fetch_token",
            new_callable=AsyncMock,
            return_value={"token_type": "bearer"},
        ):
            with pytest.raises(ProviderError):
                await fetch_client_credentials_token("id", "secret", "https://p.example/token")
