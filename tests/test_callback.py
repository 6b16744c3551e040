"""
Tests for CallbackHandler — redirect leg, callback leg and the popup page.
"""

import json
import re
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from config.settings import config
from oauth.callback import (
    INVALID_STATE,
    MISSING_SESSION,
    PERSISTENCE_FAILED,
    PROVIDER_ERROR,
    TOKEN_EXCHANGE_FAILED,
    CallbackHandler,
    callback_html,
    target_origin,
)
from oauth.flow import FlowSession, FlowState, ProtocolKind
from oauth.oauth2 import OAuth2Strategy
from oauth.persistence import TokenPersistence
from oauth.schemas import CallbackParams, TokenResult
from oauth.store import ConnectionStore
from teams.settings_client import TeamSettingsClient
from utils.errors import ProviderError

TOKENS = TokenResult(primary="at", secondary="rt", expires_in=3600)


def _flow(**kw) -> FlowSession:
    data = dict(
        provider="github",
        kind=ProtocolKind.OAUTH2,
        team_id="team-1",
        entry_prefix="GITHUB",
        client_id="id1",
        client_secret="sec1",
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        callback_url="http://test/oauth/github/callback",
        origin="https://app.example.com",
        provider_config={"service": "github", "clientID": "id1", "clientSecret": "sec1"},
    )
    data.update(kw)
    return FlowSession(**data)


def _message(response) -> dict:
    """The object the page posts to window.opener."""
    match = re.search(r"postMessage\((\{.*?\}), ", response.body.decode())
    return json.loads(match.group(1))


@pytest.fixture
def persistence_for(connection_store):
    return MagicMock(return_value=TokenPersistence(connection_store))


@pytest.fixture
def handler(flow_store, persistence_for):
    return CallbackHandler(flow_store, persistence_for)


@pytest.fixture
def redirected(flow_store):
    flow = _flow(state=FlowState.REDIRECTED, csrf_state="s1")
    flow_store.save("sid", flow)
    return flow


class TestRedirect:
    @pytest.mark.asyncio
    async def test_sends_browser_to_provider(self, handler, flow_store):
        flow_store.save("sid", _flow())
        response = await handler.redirect("sid", "github")

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://github.com/login/oauth/authorize?")
        flow = flow_store.get("sid")
        assert flow.state == FlowState.REDIRECTED
        assert flow.csrf_state in response.headers["location"]

    @pytest.mark.asyncio
    async def test_no_flow(self, handler):
        response = await handler.redirect("sid", "github")
        assert _message(response)["data"]["code"] == MISSING_SESSION

    @pytest.mark.asyncio
    async def test_provider_mismatch(self, handler, flow_store):
        flow_store.save("sid", _flow())
        response = await handler.redirect("sid", "slack")
        assert _message(response)["type"] == "error"
        assert flow_store.get("sid").state == FlowState.REQUESTED

    @pytest.mark.asyncio
    async def test_strategy_failure_discards_flow(self, handler, flow_store):
        flow_store.save("sid", _flow(authorization_url=None))
        response = await handler.redirect("sid", "github")
        assert _message(response)["data"]["code"] == TOKEN_EXCHANGE_FAILED
        assert flow_store.get("sid") is None


class TestCallback:
    @pytest.mark.asyncio
    async def test_success_stores_tokens(self, handler, redirected, team_settings, persistence_for):
        with patch.object(OAuth2Strategy, "exchange_token", new=AsyncMock(return_value=TOKENS)):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))

        message = _message(response)
        assert response.status_code == 200
        assert message == {"type": "oauth2", "data": {"message": "Authentication successful"}}
        persistence_for.assert_called_once_with("team-1")
        stored = team_settings.data["oauth"]["GITHUB_TOKENS"]
        assert stored["auth_data"]["primary"] == "at"
        assert stored["auth_settings"]["clientID"] == "id1"
        assert redirected.state == FlowState.DONE

    @pytest.mark.asyncio
    async def test_oauth1_success_type(self, handler, flow_store):
        flow_store.save(
            "sid",
            _flow(kind=ProtocolKind.OAUTH1, provider="trello", state=FlowState.REDIRECTED, request_token="rt"),
        )
        with patch(
            "oauth.oauth1.OAuth1Strategy.exchange_token",
            new=AsyncMock(return_value=TokenResult(primary="t", secondary="ts")),
        ):
            response = await handler.handle(
                "sid", "trello", CallbackParams(oauth_token="rt", oauth_verifier="v")
            )
        assert _message(response)["type"] == "oauth"

    @pytest.mark.asyncio
    async def test_state_mismatch_never_persists(self, handler, redirected, persistence_for, team_settings):
        exchange = AsyncMock(return_value=TOKENS)
        with patch.object(OAuth2Strategy, "exchange_token", new=exchange):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="forged"))

        assert response.status_code == 401
        assert _message(response)["type"] == "error"
        assert _message(response)["data"]["code"] == INVALID_STATE
        exchange.assert_not_awaited()
        persistence_for.assert_not_called()
        assert team_settings.writes == []
        assert redirected.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_flow_is_consumed_once(self, handler, redirected, flow_store):
        await handler.handle("sid", "github", CallbackParams(code="c", state="forged"))
        assert flow_store.get("sid") is None
        response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))
        assert _message(response)["data"]["code"] == MISSING_SESSION

    @pytest.mark.asyncio
    async def test_callback_before_redirect_is_rejected(self, handler, flow_store):
        flow_store.save("sid", _flow(csrf_state="s1"))
        response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))
        assert _message(response)["data"]["code"] == INVALID_STATE

    @pytest.mark.asyncio
    async def test_missing_session(self, handler, persistence_for):
        response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))
        assert _message(response)["data"]["code"] == MISSING_SESSION
        persistence_for.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_reported_error(self, handler, redirected):
        response = await handler.handle(
            "sid", "github", CallbackParams(error="access_denied", error_description="User said no")
        )
        message = _message(response)
        assert message["data"] == {"message": "User said no", "code": PROVIDER_ERROR}

    @pytest.mark.asyncio
    async def test_upstream_failure(self, handler, redirected):
        failing = AsyncMock(side_effect=ProviderError(upstream_status=403))
        with patch.object(OAuth2Strategy, "exchange_token", new=failing):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))
        assert _message(response)["data"] == {
            "message": "Forbidden. Access is denied.",
            "code": PROVIDER_ERROR,
        }

    @pytest.mark.asyncio
    async def test_exchange_failure(self, handler, redirected, persistence_for):
        failing = AsyncMock(side_effect=ProviderError("Token response did not include an access token."))
        with patch.object(OAuth2Strategy, "exchange_token", new=failing):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))
        assert _message(response)["data"]["code"] == TOKEN_EXCHANGE_FAILED
        persistence_for.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_generic(self, handler, redirected, team_settings):
        team_settings.fail_writes = True
        with patch.object(OAuth2Strategy, "exchange_token", new=AsyncMock(return_value=TOKENS)):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))

        message = _message(response)
        assert message["type"] == "error"
        assert message["data"] == {
            "message": "Something went wrong, saving failed!",
            "code": PERSISTENCE_FAILED,
        }
        assert redirected.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_unreadable_settings_store_renders_error_page(self, flow_store, redirected):
        gateway = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        settings = TeamSettingsClient("team-1", "id-token", base_url="http://settings.test", transport=gateway)
        store = ConnectionStore(settings)
        handler = CallbackHandler(flow_store, MagicMock(return_value=TokenPersistence(store)))

        with patch.object(OAuth2Strategy, "exchange_token", new=AsyncMock(return_value=TOKENS)):
            response = await handler.handle("sid", "github", CallbackParams(code="c", state="s1"))

        assert _message(response)["data"]["code"] == PERSISTENCE_FAILED
        assert "gateway" not in response.body.decode()
        assert redirected.state == FlowState.FAILED


class TestPage:
    def test_posts_to_recorded_origin(self):
        page = callback_html("oauth2", {"message": "ok"}, "https://app.example.com", provider="github")
        assert 'postMessage({"type": "oauth2", "data": {"message": "ok"}}, "https://app.example.com")' in page
        assert "window.close()" in page

    def test_script_breakout_is_escaped(self):
        page = callback_html("error", {"message": "</script><script>alert(1)</script>"}, "*")
        assert "</script><script>alert(1)" not in page
        assert "\\u003c/script\\u003e" in page
        assert "&lt;/script&gt;" in page

    def test_target_origin_prefers_flow(self):
        assert target_origin(_flow(), "https://other.example/x") == "https://app.example.com"

    def test_target_origin_allowed_referer(self, monkeypatch):
        monkeypatch.setattr(config, "allowed_origins", ["https://app.example.com"])
        assert target_origin(None, "https://app.example.com/builder") == "https://app.example.com"

    def test_target_origin_falls_back_to_ui_server(self, monkeypatch):
        monkeypatch.setattr(config, "ui_server", "https://ui.example.com/")
        monkeypatch.setattr(config, "allowed_origins", [])
        assert target_origin(None, "https://evil.example/x") == "https://ui.example.com"

    def test_target_origin_wildcard_last(self, monkeypatch):
        monkeypatch.setattr(config, "ui_server", "")
        monkeypatch.setattr(config, "allowed_origins", [])
        assert target_origin(None, None) == "*"
