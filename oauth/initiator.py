"""
FlowInitiator — validates an ``/oauth/init`` request and opens a flow.

Nothing external is contacted until the request has passed validation and
the origin check.  The returned auth URL is relative: the browser is sent to
``GET /oauth/{service}``, which builds the provider URL from the stored flow.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from oauth.flow import FlowSession, FlowSessionStore, ProtocolKind
from oauth.schemas import InitRequest
from oauth.templates import resolve_templates
from utils.errors import OriginNotAllowed, ValidationError, summarize_validation_error
from vault.service import SecretVault

logger = logging.getLogger(__name__)


# ── Origins ────────────────────────────────────────────────────────────


def origin_of(url: Optional[str]) -> Optional[str]:
    """``scheme://host[:port]`` of ``url``, or None if it has none."""
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def declared_origin(origin: Optional[str], referer: Optional[str]) -> Optional[str]:
    """The ``Origin`` header if sent, else the origin of ``Referer``."""
    if origin and origin != "null":
        return origin.rstrip("/")
    return origin_of(referer)


def is_allowed_origin(origin: str, allow_list: Optional[List[str]] = None) -> bool:
    allowed = config.origin_allow_list() if allow_list is None else allow_list
    return origin.rstrip("/") in allowed


def parse_init_request(body: Dict[str, Any]) -> InitRequest:
    try:
        return InitRequest.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(summarize_validation_error(exc)) from None


# ── Initiator ──────────────────────────────────────────────────────────


class FlowInitiator:
    def __init__(
        self,
        flows: FlowSessionStore,
        vault: SecretVault,
        *,
        allow_list: Optional[List[str]] = None,
    ) -> None:
        self._flows = flows
        self._vault = vault
        self._allow_list = allow_list

    async def initiate(
        self,
        session_id: str,
        team_id: str,
        body: Dict[str, Any],
        *,
        origin: Optional[str] = None,
        referer: Optional[str] = None,
        base_url: str = "",
    ) -> Dict[str, str]:
        """
        Validate ``body``, store a new flow for ``session_id`` and return
        ``{"authUrl": "/oauth/<service>"}``.

        Raises
        ------
        ValidationError  – malformed body or unknown vault reference
        OriginNotAllowed – declared origin not on the allow-list
        """
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object.")

        request_origin = declared_origin(origin, referer)
        if request_origin and not is_allowed_origin(request_origin, self._allow_list):
            logger.warning("OAuth init from disallowed origin %s (team %s)", request_origin, team_id)
            raise OriginNotAllowed()

        submitted = parse_init_request(body)
        resolved = parse_init_request(await resolve_templates(body, self._vault))

        flow = self._build_flow(
            resolved,
            team_id=team_id,
            origin=request_origin,
            provider_config=submitted.submitted(),
            base_url=base_url,
        )
        self._flows.save(session_id, flow)
        logger.info(
            "OAuth flow opened: provider=%s kind=%s team=%s",
            flow.provider, flow.kind.value, team_id,
        )
        return {"authUrl": f"/oauth/{quote(resolved.service, safe='')}"}

    @staticmethod
    def _build_flow(
        req: InitRequest,
        *,
        team_id: str,
        origin: Optional[str],
        provider_config: Dict[str, Any],
        base_url: str,
    ) -> FlowSession:
        kind = req.kind
        callback = req.callback
        if not callback:
            callback = f"{base_url.rstrip('/')}/oauth/{quote(req.service, safe='')}/callback"

        provider_config = {k: v for k, v in provider_config.items() if k != "oauth_keys_prefix"}

        if kind == ProtocolKind.OAUTH1:
            return FlowSession(
                provider=req.service,
                kind=kind,
                team_id=team_id,
                entry_prefix=req.entry_prefix,
                consumer_key=req.consumerKey,
                consumer_secret=req.consumerSecret,
                request_token_url=req.requestTokenURL,
                authorization_url=req.userAuthorizationURL or req.authorizationURL,
                access_token_url=req.accessTokenURL or req.tokenURL,
                token_url=req.accessTokenURL or req.tokenURL,
                callback_url=callback,
                scopes=req.scopes,
                origin=origin,
                provider_config=provider_config,
            )
        return FlowSession(
            provider=req.service,
            kind=kind,
            team_id=team_id,
            entry_prefix=req.entry_prefix,
            client_id=req.clientID,
            client_secret=req.clientSecret,
            authorization_url=req.authorizationURL,
            token_url=req.tokenURL,
            callback_url=callback,
            scopes=req.scopes,
            origin=origin,
            provider_config=provider_config,
        )
