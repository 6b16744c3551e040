"""
Client-credentials grant — machine-to-machine tokens, no browser involved.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from authlib.integrations.httpx_client import AsyncOAuth2Client
from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from oauth.base import UPSTREAM_ERRORS, parse_expires_in, to_provider_error
from oauth.flow import FlowSession, FlowState, ProtocolKind
from oauth.models import CurrentEntry
from oauth.persistence import TokenPersistence
from oauth.schemas import ClientCredentialsRequest, TokenResult
from oauth.templates import resolve_templates
from utils.errors import ProviderError, ValidationError, summarize_validation_error
from vault.service import SecretVault

logger = logging.getLogger(__name__)


async def fetch_client_credentials_token(
    client_id: str,
    client_secret: str,
    token_url: str,
    scopes: Optional[List[str]] = None,
) -> TokenResult:
    """
    POST ``grant_type=client_credentials`` with the client credentials in
    the form body.

    Raises
    ------
    ProviderError – token endpoint refused or returned no access token
    """
    try:
        async with AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=scopes or None,
            timeout=config.http_timeout,
        ) as client:
            token = await client.fetch_token(token_url, grant_type="client_credentials")
    except UPSTREAM_ERRORS as exc:
        logger.warning("Client credentials grant against %s failed: %s", token_url, exc)
        raise to_provider_error(exc) from exc

    if not token.get("access_token"):
        raise ProviderError("OAuth token retrieval failed.")
    return TokenResult(
        primary=token["access_token"],
        secondary=token.get("refresh_token") or "",
        expires_in=parse_expires_in(token.get("expires_in")),
    )


async def run_client_credentials(
    body: Dict[str, Any],
    *,
    team_id: str,
    vault: SecretVault,
    persistence: TokenPersistence,
) -> CurrentEntry:
    """
    Validate ``body``, fetch a token and store the connection.

    The flow goes straight from Requested to Exchanged: there is no browser
    leg to track.
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    try:
        submitted = ClientCredentialsRequest.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(summarize_validation_error(exc)) from None
    if not submitted.entry_prefix:
        raise ValidationError("oauth_keys_prefix is required.")

    try:
        req = ClientCredentialsRequest.model_validate(await resolve_templates(body, vault))
    except PydanticValidationError as exc:
        raise ValidationError(summarize_validation_error(exc)) from None

    flow = FlowSession(
        provider=req.service or submitted.entry_prefix,
        kind=ProtocolKind.CLIENT_CREDENTIALS,
        team_id=team_id,
        entry_prefix=submitted.entry_prefix,
        client_id=req.clientID,
        client_secret=req.clientSecret,
        token_url=req.tokenURL,
        scopes=req.scopes,
        provider_config={
            k: v for k, v in submitted.submitted().items() if k != "oauth_keys_prefix"
        },
    )

    tokens = await fetch_client_credentials_token(
        req.clientID, req.clientSecret, req.tokenURL, req.scopes
    )
    flow.advance(FlowState.EXCHANGED)
    entry = await persistence.store(tokens, flow)
    flow.advance(FlowState.PERSISTED)
    flow.advance(FlowState.DONE)
    return entry
