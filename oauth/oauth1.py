"""
OAuth1Strategy — three-legged OAuth 1.0a.

The request token obtained before the redirect doubles as the flow's CSRF
binding: the callback must hand back the same ``oauth_token``.
"""

from __future__ import annotations

import logging

from authlib.integrations.httpx_client import AsyncOAuth1Client

from config.settings import config
from oauth.base import UPSTREAM_ERRORS, BaseStrategy, states_match, to_provider_error
from oauth.flow import FlowSession, ProtocolKind
from oauth.schemas import CallbackParams, TokenResult
from utils.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)


class OAuth1Strategy(BaseStrategy):
    """HMAC-SHA1 signed OAuth 1.0a through authlib's httpx client."""

    @property
    def name(self) -> str:
        return "oauth1"

    @property
    def kind(self) -> ProtocolKind:
        return ProtocolKind.OAUTH1

    def _client(self, flow: FlowSession, **kwargs) -> AsyncOAuth1Client:
        return AsyncOAuth1Client(
            client_id=flow.consumer_key,
            client_secret=flow.consumer_secret,
            redirect_uri=flow.callback_url,
            timeout=config.http_timeout,
            **kwargs,
        )

    async def build_auth_url(self, flow: FlowSession) -> str:
        if not flow.request_token_url or not flow.authorization_url:
            raise ValidationError("Missing request token or authorization URL.")

        try:
            async with self._client(flow) as client:
                request_token = await client.fetch_request_token(flow.request_token_url)
                url = client.create_authorization_url(
                    flow.authorization_url,
                    request_token=request_token["oauth_token"],
                )
        except UPSTREAM_ERRORS as exc:
            logger.warning("OAuth1 request token failed for %s: %s", flow.provider, exc)
            raise to_provider_error(exc) from exc

        flow.request_token = request_token["oauth_token"]
        flow.request_token_secret = request_token.get("oauth_token_secret")
        flow.csrf_state = flow.request_token
        return url

    def verify_callback(self, flow: FlowSession, params: CallbackParams) -> bool:
        return states_match(flow.request_token, params.oauth_token)

    async def exchange_token(self, flow: FlowSession, params: CallbackParams) -> TokenResult:
        if not params.oauth_verifier:
            raise ProviderError("Missing OAuth verifier.")
        if not flow.access_token_url:
            raise ValidationError("Missing access token URL.")

        try:
            async with self._client(
                flow,
                token=flow.request_token,
                token_secret=flow.request_token_secret,
            ) as client:
                token = await client.fetch_access_token(
                    flow.access_token_url, verifier=params.oauth_verifier
                )
        except UPSTREAM_ERRORS as exc:
            logger.warning("OAuth1 access token failed for %s: %s", flow.provider, exc)
            raise to_provider_error(exc) from exc

        if not token.get("oauth_token"):
            raise ProviderError("Token response did not include an access token.")
        return TokenResult(
            primary=token["oauth_token"],
            secondary=token.get("oauth_token_secret") or "",
        )
