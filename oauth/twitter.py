"""
TwitterPKCEStrategy — OAuth2 with PKCE for X (Twitter).

X requires PKCE on its OAuth2 endpoints and authenticates the token request
with HTTP Basic client credentials, so the exchange is done by hand rather
than through the generic OAuth2 client.
"""

from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

import httpx
from authlib.oauth2.rfc7636 import create_s256_code_challenge

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
from utils.errors import ProviderError

logger = logging.getLogger(__name__)


def new_code_verifier() -> str:
    """base64url of 32 random bytes (43 chars, no padding)."""
    return secrets.token_urlsafe(32)


class TwitterPKCEStrategy(BaseStrategy):
    """Authorization-code + PKCE (S256) for X."""

    @property
    def name(self) -> str:
        return "twitter_pkce"

    @property
    def kind(self) -> ProtocolKind:
        return ProtocolKind.OAUTH2

    async def build_auth_url(self, flow: FlowSession) -> str:
        flow.code_verifier = new_code_verifier()
        flow.csrf_state = new_state()

        params = {
            "response_type": "code",
            "client_id": flow.client_id or "",
            "redirect_uri": flow.callback_url or "",
            "scope": " ".join(flow.scopes),
            "state": flow.csrf_state,
            "code_challenge": create_s256_code_challenge(flow.code_verifier),
            "code_challenge_method": "S256",
        }
        return f"{config.twitter_authorize_url}?{urlencode(params)}"

    async def exchange_token(self, flow: FlowSession, params: CallbackParams) -> TokenResult:
        if not params.code:
            raise ProviderError("Missing authorization code.")
        if not flow.code_verifier:
            raise ProviderError("Missing PKCE verifier.")

        try:
            async with httpx.AsyncClient(timeout=config.http_timeout) as client:
                resp = await client.post(
                    config.twitter_token_url,
                    data={
                        "code": params.code,
                        "grant_type": "authorization_code",
                        "client_id": flow.client_id or "",
                        "redirect_uri": flow.callback_url or "",
                        "code_verifier": flow.code_verifier,
                    },
                    auth=(flow.client_id or "", flow.client_secret or ""),
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
                data = resp.json()
        except UPSTREAM_ERRORS as exc:
            logger.warning("PKCE code exchange failed for %s: %s", flow.provider, exc)
            raise to_provider_error(exc) from exc

        if "error" in data or not data.get("access_token"):
            raise ProviderError(
                data.get("error_description")
                or "Failed to exchange authorization code for tokens."
            )
        return TokenResult(
            primary=data["access_token"],
            secondary=data.get("refresh_token") or "",
            expires_in=parse_expires_in(data.get("expires_in")),
        )
