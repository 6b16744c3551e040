"""
FastAPI dependencies (shared across routes).

Identity comes from the upstream auth middleware: ``request.state`` when it
set team / user / id token there, else the ``X-Team-Id``, ``X-User-Email``
and ``Authorization`` headers.  Process-wide state (secret cache, flow
store) lives on ``app.state``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request

from config.settings import config
from oauth.callback import CallbackHandler
from oauth.flow import FlowSessionStore
from oauth.persistence import TokenPersistence
from oauth.registry import StrategyRegistry
from oauth.store import ConnectionStore
from oauth.validator import ConnectionValidator
from teams.settings_client import TeamSettingsClient
from utils.errors import AuthenticationFailed
from vault.cache import SecretCache
from vault.client import VaultClient
from vault.service import SecretVault

SESSION_ID_KEY = "sid"

# (team_id, id_token) → settings client
SettingsFactory = Callable[[str, str], TeamSettingsClient]


@dataclass
class RequestContext:
    team_id: str
    user_email: Optional[str] = None
    token: str = ""


def get_id_token(request: Request) -> str:
    token = getattr(request.state, "id_token", None)
    if not token:
        authorization = request.headers.get("Authorization", "")
        token = authorization[7:] if authorization.startswith("Bearer ") else ""
    return token


async def get_request_context(request: Request) -> RequestContext:
    """Caller identity; 401 when no team is attached to the request."""
    state = request.state
    team_id = getattr(state, "team_id", None) or request.headers.get("X-Team-Id")
    user_email = getattr(state, "user_email", None) or request.headers.get("X-User-Email")
    if not team_id:
        raise AuthenticationFailed("Team not found.")
    return RequestContext(team_id=team_id, user_email=user_email, token=get_id_token(request))


def get_session_id(request: Request) -> str:
    """Opaque per-browser id kept in the signed session cookie."""
    return request.session.setdefault(SESSION_ID_KEY, uuid.uuid4().hex)


def get_secret_cache(request: Request) -> SecretCache:
    return request.app.state.secret_cache


def get_flow_store(request: Request) -> FlowSessionStore:
    return request.app.state.flow_store


def get_strategy_registry() -> StrategyRegistry:
    return StrategyRegistry()


# ── Team-scoped collaborators ───────────────────────────────────────────


def get_settings_factory(cache: SecretCache = Depends(get_secret_cache)) -> SettingsFactory:
    def build(team_id: str, token: str) -> TeamSettingsClient:
        return TeamSettingsClient(
            team_id,
            token,
            forbidden_policy=config.team_forbidden_policy,
            secret_cache=cache,
        )

    return build


def get_settings_client(
    ctx: RequestContext = Depends(get_request_context),
    factory: SettingsFactory = Depends(get_settings_factory),
) -> TeamSettingsClient:
    return factory(ctx.team_id, ctx.token)


def get_vault_client(ctx: RequestContext = Depends(get_request_context)) -> VaultClient:
    return VaultClient(ctx.team_id, ctx.token)


def get_vault(
    backend: VaultClient = Depends(get_vault_client),
    settings: TeamSettingsClient = Depends(get_settings_client),
    cache: SecretCache = Depends(get_secret_cache),
) -> SecretVault:
    return SecretVault(backend, settings, cache)


def get_connection_store(
    settings: TeamSettingsClient = Depends(get_settings_client),
) -> ConnectionStore:
    return ConnectionStore(settings)


def get_validator(
    store: ConnectionStore = Depends(get_connection_store),
) -> ConnectionValidator:
    return ConnectionValidator(store)


def get_persistence(
    store: ConnectionStore = Depends(get_connection_store),
) -> TokenPersistence:
    return TokenPersistence(store)


def get_callback_handler(
    flows: FlowSessionStore = Depends(get_flow_store),
    registry: StrategyRegistry = Depends(get_strategy_registry),
    factory: SettingsFactory = Depends(get_settings_factory),
    token: str = Depends(get_id_token),
) -> CallbackHandler:
    """The provider redirect carries no team; the flow knows which one it is."""

    def persistence_for(team_id: str) -> TokenPersistence:
        return TokenPersistence(ConnectionStore(factory(team_id, token)))

    return CallbackHandler(flows, persistence_for, registry)
