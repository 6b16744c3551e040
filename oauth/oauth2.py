"""
OAuth2Strategy — generic authorization-code flow for any OAuth2 provider.

Endpoints, client credentials and scopes all come from the flow, so one
instance serves every provider that does not need special handling.
"""

from __future__ import annotations

import logging

from authlib.integrations.httpx_client import AsyncOAuth2Client

from config.settings import config
from oauth.base import (
    UPSTREAM_ERRORS,
    BaseStrategy,
    new_state,
    parse_expires_in,
    to_provider_error,
)
from oauth.flow import FlowSession, ProtocolKind
from oauth.schemas import CallbackParams, TokenResult
from utils.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)


class OAuth2Strategy(BaseStrategy):
    """Authorization-code grant through authlib's httpx client."""

    @property
    def name(self) -> str:
        return "oauth2"

    @property
    def kind(self) -> ProtocolKind:
        return ProtocolKind.OAUTH2

    def _client(self, flow: FlowSession) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=flow.client_id,
            client_secret=flow.client_secret,
            scope=flow.scopes or None,
            redirect_uri=flow.callback_url,
            timeout=config.http_timeout,
        )

    async def build_auth_url(self, flow: FlowSession) -> str:
        if not flow.authorization_url:
            raise ValidationError("Missing authorization URL.")

        flow.csrf_state = new_state()
        async with self._client(flow) as client:
            url, _ = client.create_authorization_url(
                flow.authorization_url,
                state=flow.csrf_state,
                access_type="offline",   # ask for a refresh token
                prompt="consent",
            )
        return url

    async def exchange_token(self, flow: FlowSession, params: CallbackParams) -> TokenResult:
        if not params.code:
            raise ProviderError("Missing authorization code.")
        if not flow.token_url:
            raise ValidationError("Missing token URL.")

        try:
            async with self._client(flow) as client:
                token = await client.fetch_token(flow.token_url, code=params.code)
        except UPSTREAM_ERRORS as exc:
            logger.warning("OAuth2 code exchange failed for %s: %s", flow.provider, exc)
            raise to_provider_error(exc) from exc

        if not token.get("access_token"):
            raise ProviderError("Token response did not include an access token.")
        return TokenResult(
            primary=token["access_token"],
            secondary=token.get("refresh_token") or "",
            expires_in=parse_expires_in(token.get("expires_in")),
        )
