"""
OAuth API routes — start a flow, finish it, check / sign out / list connections.

Route prefix: /oauth
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse

from api.dependencies import (
    RequestContext,
    get_callback_handler,
    get_connection_store,
    get_flow_store,
    get_persistence,
    get_request_context,
    get_session_id,
    get_validator,
    get_vault,
)
from oauth.callback import CallbackHandler
from oauth.client_credentials import run_client_credentials
from oauth.flow import FlowSessionStore
from oauth.initiator import FlowInitiator
from oauth.models import ENTRY_SUFFIX, entry_id_for
from oauth.persistence import TokenPersistence
from oauth.sanitizer import sanitize_connection
from oauth.schemas import CallbackParams, SignOutRequest
from oauth.store import ConnectionStore
from oauth.validator import ConnectionValidator
from utils.errors import BrokerError, NotFound
from vault.service import SecretVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


# ── Connection checks ──────────────────────────────────────────────────


@router.post("/checkAuth")
async def check_auth(
    body: Dict[str, Any] = Body(...),
    validator: ConnectionValidator = Depends(get_validator),
) -> Dict[str, bool]:
    """Is there a usable connection matching these provider fields?"""
    return {"success": await validator.check(body)}


@router.post("/signOut")
async def sign_out(
    body: SignOutRequest,
    validator: ConnectionValidator = Depends(get_validator),
) -> Dict[str, Any]:
    """Clear a connection's tokens; its settings are kept."""
    return await validator.sign_out(body.oauth_keys_prefix, body.invalidateAuthentication)


# ── Flow initiation ────────────────────────────────────────────────────


@router.post("/init")
async def init_flow(
    request: Request,
    body: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    session_id: str = Depends(get_session_id),
    flows: FlowSessionStore = Depends(get_flow_store),
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, str]:
    """
    Validate provider fields and open a flow for this browser session.

    The frontend opens the returned ``authUrl`` in a popup.
    """
    initiator = FlowInitiator(flows, vault)
    return await initiator.initiate(
        session_id,
        ctx.team_id,
        body,
        origin=request.headers.get("origin"),
        referer=request.headers.get("referer"),
        base_url=str(request.base_url),
    )


@router.post("/client_credentials")
async def client_credentials(
    body: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    vault: SecretVault = Depends(get_vault),
    persistence: TokenPersistence = Depends(get_persistence),
):
    """Fetch a machine-to-machine token and store it as a connection."""
    try:
        await run_client_credentials(body, team_id=ctx.team_id, vault=vault, persistence=persistence)
    except BrokerError as exc:
        logger.warning("Client credentials flow failed for team %s: %s", ctx.team_id, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "message": f"OAuth2 Authentication was unsuccessful: {exc.message}",
            },
        )
    return {"success": True, "message": "OAuth2 Authentication was successful"}


# ── Stored connections ─────────────────────────────────────────────────


@router.get("/connections")
async def list_connections(
    store: ConnectionStore = Depends(get_connection_store),
) -> Dict[str, Any]:
    """All connections of the team, secrets redacted."""
    entries = await store.list_raw()
    return {
        entry_id[: -len(ENTRY_SUFFIX)]: sanitize_connection(raw)
        for entry_id, raw in entries.items()
    }


@router.get("/connections/{prefix}")
async def get_connection(
    prefix: str,
    store: ConnectionStore = Depends(get_connection_store),
) -> Dict[str, Any]:
    raw = await store.load_raw(entry_id_for(prefix))
    if raw is None:
        raise NotFound("OAuth connection not found.")
    return sanitize_connection(raw)


@router.delete("/connections/{prefix}")
async def delete_connection(
    prefix: str,
    store: ConnectionStore = Depends(get_connection_store),
) -> Dict[str, Any]:
    """Remove a stored connection."""
    entry_id = entry_id_for(prefix)
    if await store.load_raw(entry_id) is None:
        raise NotFound("OAuth connection not found.")
    await store.delete(entry_id)
    logger.info("Deleted connection %s for team %s", entry_id, store.team_id)
    return {"deleted": True}


# ── Browser legs ───────────────────────────────────────────────────────


@router.get("/{provider}")
async def start_authorization(
    provider: str,
    request: Request,
    session_id: str = Depends(get_session_id),
    handler: CallbackHandler = Depends(get_callback_handler),
):
    """Redirect the popup to the provider's consent page."""
    return await handler.redirect(session_id, provider, request.headers.get("referer"))


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    oauth_token: Optional[str] = Query(None),
    oauth_verifier: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    session_id: str = Depends(get_session_id),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> HTMLResponse:
    """
    Provider redirects here after consent.

    Exchanges the grant for tokens, stores them, and returns a small HTML
    page that notifies the opener window and closes.
    """
    params = CallbackParams(
        code=code,
        state=state,
        oauth_token=oauth_token,
        oauth_verifier=oauth_verifier,
        error=error,
        error_description=error_description,
    )
    return await handler.handle(session_id, provider, params, request.headers.get("referer"))
