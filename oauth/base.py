"""
BaseStrategy — abstract interface for all authorization protocol strategies.

A strategy knows how to send the browser to a provider and how to turn the
provider's callback into tokens.  Generic OAuth1 / OAuth2 strategies cover
most providers; providers with quirks get their own subclass registered
under their provider id (see ``oauth.registry``).
"""

from __future__ import annotations

import hmac
import secrets
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from authlib.integrations.httpx_client import OAuthError

from oauth.flow import FlowSession, ProtocolKind
from oauth.schemas import CallbackParams, TokenResult
from utils.errors import ProviderError

# Exceptions the protocol libraries raise for upstream trouble.
UPSTREAM_ERRORS = (OAuthError, httpx.HTTPError, ValueError, KeyError)


class BaseStrategy(ABC):
    """Abstract base for all protocol strategies."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def name(self) -> str:
        """Unique slug, used in logs."""
        ...

    @property
    @abstractmethod
    def kind(self) -> ProtocolKind:
        """Protocol this strategy speaks."""
        ...

    # ── Flow ────────────────────────────────────────────────────────────

    @abstractmethod
    async def build_auth_url(self, flow: FlowSession) -> str:
        """
        Build the provider's authorization URL.

        Implementations generate a fresh CSRF state (and any verifier) for
        every call and record them on ``flow``.
        """
        ...

    def verify_callback(self, flow: FlowSession, params: CallbackParams) -> bool:
        """True when the callback carries the state recorded for this flow."""
        return states_match(flow.csrf_state, params.state)

    @abstractmethod
    async def exchange_token(self, flow: FlowSession, params: CallbackParams) -> TokenResult:
        """
        Exchange the callback's grant for tokens.

        Raises
        ------
        ProviderError – the provider refused or answered with garbage
        """
        ...


# ── Helpers ────────────────────────────────────────────────────────────


def new_state() -> str:
    """Opaque random value binding a callback to its flow."""
    return secrets.token_urlsafe(32)


def states_match(expected: Optional[str], received: Optional[str]) -> bool:
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


def parse_expires_in(value: Any) -> Optional[int]:
    """Provider ``expires_in`` (int or numeric string) → seconds, else None."""
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_provider_error(exc: Exception) -> ProviderError:
    """Map a protocol-library exception onto :class:`ProviderError`."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return ProviderError(upstream_status=exc.response.status_code)
    if isinstance(exc, OAuthError):
        description = exc.description or exc.error or "Authentication failed."
        code = exc.error or "unknown_error"
        return ProviderError(f"{description} (Error code: {code})")
    return ProviderError()
