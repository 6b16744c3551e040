"""
CallbackHandler — finishes a flow when the provider sends the browser back.

Every outcome, success or failure, is answered with a small page that posts
``{type, data}`` to ``window.opener`` and closes the popup.  ``type`` is
``oauth`` (OAuth1), ``oauth2`` or ``error``.
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi.responses import HTMLResponse, RedirectResponse

from config.settings import config
from oauth.flow import FlowSession, FlowSessionStore, FlowState, ProtocolKind
from oauth.initiator import is_allowed_origin, origin_of
from oauth.persistence import TokenPersistence
from oauth.registry import StrategyRegistry
from oauth.schemas import CallbackParams
from utils.errors import BrokerError, PersistenceError, ProviderError

logger = logging.getLogger(__name__)

# ── Error codes carried in ``data.code`` ───────────────────────────────

MISSING_SESSION = "missing_session"
PROVIDER_ERROR = "provider_error"
INVALID_STATE = "invalid_state"
TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
PERSISTENCE_FAILED = "persistence_failed"

_MESSAGES = {
    MISSING_SESSION: "Session or strategy type is not correctly set.",
    INVALID_STATE: "Invalid state parameter. Possible CSRF attack.",
    TOKEN_EXCHANGE_FAILED: "Failed to exchange authorization code for tokens.",
    PERSISTENCE_FAILED: "Something went wrong, saving failed!",
}

SUCCESS_MESSAGE = "Authentication successful"


class CallbackHandler:
    def __init__(
        self,
        flows: FlowSessionStore,
        persistence_for: Callable[[str], TokenPersistence],
        registry: Optional[StrategyRegistry] = None,
    ) -> None:
        self._flows = flows
        # team id → persistence; the team comes from the flow, not the callback request
        self._persistence_for = persistence_for
        self._registry = registry or StrategyRegistry()

    # ── GET /oauth/{provider} ──────────────────────────────────────────

    async def redirect(self, session_id: str, provider: str, referer: Optional[str] = None):
        """Send the browser to the provider, or render an error page."""
        flow = self._flows.get(session_id)
        if flow is None or flow.provider != provider or flow.is_terminal:
            logger.warning("No open OAuth flow for provider %s", provider)
            return self._error_page(MISSING_SESSION, None, referer)

        try:
            strategy = self._registry.resolve(flow.provider, flow.kind)
            url = await strategy.build_auth_url(flow)
            flow.advance(FlowState.REDIRECTED)
        except BrokerError as exc:
            flow.fail(exc.message)
            self._flows.discard(session_id)
            logger.warning("Could not start %s authorization: %s", provider, exc.message)
            code = PROVIDER_ERROR if isinstance(exc, ProviderError) else TOKEN_EXCHANGE_FAILED
            return self._error_page(code, flow, referer, message=exc.message)

        # the strategy wrote fresh state / verifier into the flow
        self._flows.save(session_id, flow)
        return RedirectResponse(url, status_code=302)

    # ── GET /oauth/{provider}/callback ────────────────────────────────

    async def handle(
        self,
        session_id: str,
        provider: str,
        params: CallbackParams,
        referer: Optional[str] = None,
    ) -> HTMLResponse:
        flow = self._flows.pop(session_id)
        if flow is None or flow.provider != provider:
            logger.warning("OAuth callback for %s without a matching flow", provider)
            return self._error_page(MISSING_SESSION, None, referer)

        if params.error:
            flow.fail(params.error)
            logger.info("Provider %s reported %s", provider, params.error)
            message = params.error_description or f"Authentication failed. (Error code: {params.error})"
            return self._error_page(PROVIDER_ERROR, flow, referer, message=message)

        try:
            strategy = self._registry.resolve(flow.provider, flow.kind)
        except BrokerError as exc:
            flow.fail(exc.message)
            return self._error_page(TOKEN_EXCHANGE_FAILED, flow, referer, message=exc.message)

        if flow.state != FlowState.REDIRECTED or not strategy.verify_callback(flow, params):
            flow.fail(INVALID_STATE)
            logger.warning("OAuth state mismatch for %s (team %s)", provider, flow.team_id)
            return self._error_page(INVALID_STATE, flow, referer, status_code=401)

        flow.advance(FlowState.RECEIVED)
        try:
            tokens = await strategy.exchange_token(flow, params)
        except BrokerError as exc:
            flow.fail(exc.message)
            logger.warning("Token exchange failed for %s: %s", provider, exc.message)
            upstream = isinstance(exc, ProviderError) and exc.upstream_status is not None
            code = PROVIDER_ERROR if upstream else TOKEN_EXCHANGE_FAILED
            return self._error_page(code, flow, referer, message=exc.message)
        flow.advance(FlowState.EXCHANGED)

        try:
            await self._persistence_for(flow.team_id).store(tokens, flow)
        except PersistenceError:
            flow.fail("persistence")
            logger.error("Storing tokens failed for %s (team %s)", flow.entry_id, flow.team_id, exc_info=True)
            return self._error_page(PERSISTENCE_FAILED, flow, referer)
        flow.advance(FlowState.PERSISTED)
        flow.advance(FlowState.DONE)

        logger.info("OAuth connected: provider=%s entry=%s team=%s", provider, flow.entry_id, flow.team_id)
        message_type = "oauth" if flow.kind == ProtocolKind.OAUTH1 else "oauth2"
        return HTMLResponse(
            content=callback_html(
                message_type,
                {"message": SUCCESS_MESSAGE},
                target_origin(flow, referer),
                provider=provider,
            ),
            status_code=200,
        )

    # ── Internals ──────────────────────────────────────────────────────

    @staticmethod
    def _error_page(
        code: str,
        flow: Optional[FlowSession],
        referer: Optional[str],
        *,
        message: Optional[str] = None,
        status_code: int = 200,
    ) -> HTMLResponse:
        data = {"message": message or _MESSAGES.get(code, "Authentication failed."), "code": code}
        return HTMLResponse(
            content=callback_html(
                "error",
                data,
                target_origin(flow, referer),
                provider=flow.provider if flow else "",
            ),
            status_code=status_code,
        )


def target_origin(flow: Optional[FlowSession], referer: Optional[str]) -> str:
    """Recorded origin, else an allowed referrer origin, else ``UI_SERVER``, else ``*``."""
    if flow is not None and flow.origin:
        return flow.origin
    ref = origin_of(referer)
    if ref and is_allowed_origin(ref):
        return ref
    if config.ui_server:
        return config.ui_server.rstrip("/")
    return "*"


def _script_json(value: Any) -> str:
    """JSON safe to inline in a <script> block."""
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


# ── Callback HTML template ─────────────────────────────────────────────


def callback_html(message_type: str, data: Dict[str, Any], origin: str, provider: str = "") -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and closes.
    """
    success = message_type != "error"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    payload = _script_json({"type": message_type, "data": data})

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        h2 {{ color: {color}; }}
    </style>
</head>
<body>
    <h2>{status_text}</h2>
    <p>{html.escape(str(data.get("message", "")))}</p>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, {_script_json(origin)});
        }}
        window.close();
    </script>
</body>
</html>"""
