"""Shared test fixtures and in-memory fakes for the external stores."""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from config.settings import config
from oauth import encryption
from oauth.flow import FlowSessionStore
from oauth.registry import StrategyRegistry
from oauth.store import ConnectionStore
from utils.errors import PersistenceError
from vault.cache import SecretCache
from vault.service import SecretVault

TEAM_ID = "team-1"
USER_EMAIL = "dev@example.com"
AUTH_HEADERS = {
    "X-Team-Id": TEAM_ID,
    "X-User-Email": USER_EMAIL,
    "Authorization": "Bearer id-token",
}


# =============================================================================
# Fakes
# =============================================================================


class FakeSettingsClient:
    """Team settings store kept in a dict; records every write."""

    def __init__(self, team_id: str = TEAM_ID, data: Optional[Dict[str, Dict[str, Any]]] = None):
        self.team_id = team_id
        self.data: Dict[str, Dict[str, Any]] = copy.deepcopy(data or {})
        self.writes: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_writes = False

    async def get(self, setting_key: str) -> Dict[str, Any]:
        return copy.deepcopy(self.data.get(setting_key, {}))

    async def save_entry(self, setting_key: str, entry_id: str, data: Any) -> None:
        blob = await self.get(setting_key)
        blob[entry_id] = data
        await self._put(setting_key, blob)

    async def save_entries(self, setting_key: str, entries: Dict[str, Any]) -> None:
        blob = await self.get(setting_key)
        blob.update(entries)
        await self._put(setting_key, blob)

    async def delete_entry(self, setting_key: str, entry_id: str) -> None:
        await self.delete_entries(setting_key, [entry_id])

    async def delete_entries(self, setting_key: str, entry_ids: Iterable[str]) -> None:
        blob = await self.get(setting_key)
        for entry_id in entry_ids:
            blob.pop(entry_id, None)
        await self._put(setting_key, blob)

    async def _put(self, setting_key: str, blob: Dict[str, Any]) -> None:
        if self.fail_writes:
            raise PersistenceError()
        self.data[setting_key] = copy.deepcopy(blob)
        self.writes.append((setting_key, copy.deepcopy(blob)))


class FakeVaultClient:
    """Secrets backend kept in a dict, in the backend's wire shape."""

    def __init__(self, team_id: str = TEAM_ID):
        self.team_id = team_id
        self.secrets: Dict[str, Dict[str, Any]] = {}
        self.list_calls = 0
        self.fail_deletes = False
        self.deleted: List[str] = []

    def add(
        self,
        secret_id: str,
        name: str,
        value: str,
        *,
        owner: str = USER_EMAIL,
        scope: Optional[List[str]] = None,
        **metadata: Any,
    ) -> None:
        self.secrets[secret_id] = {
            "id": secret_id,
            "key": name,
            "value": value,
            "metadata": {"owner": owner, "scope": json.dumps(scope or []), **metadata},
        }

    async def get_all_secrets(self, metadata_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        self.list_calls += 1
        return [copy.deepcopy(s) for s in self.secrets.values()]

    async def get_secret(self, secret_id: Optional[str] = None, name: Optional[str] = None):
        if secret_id:
            secret = self.secrets.get(secret_id)
            return copy.deepcopy(secret) if secret else None
        for secret in self.secrets.values():
            if name and secret["key"].lower() == name.lower():
                return copy.deepcopy(secret)
        return None

    async def secret_exists(self, secret_id=None, name=None, exclude_id=None) -> bool:
        if secret_id:
            return secret_id in self.secrets
        return any(
            s["key"].lower() == (name or "").lower() and sid != exclude_id
            for sid, s in self.secrets.items()
        )

    async def count(self) -> int:
        return len(self.secrets)

    async def set_secret(self, secret_id: str, name: str, value: str, metadata: Dict[str, Any]):
        self.secrets[secret_id] = {
            "id": secret_id,
            "key": name,
            "value": value,
            "metadata": copy.deepcopy(metadata),
        }
        return {"id": secret_id}

    async def update_metadata(self, secret_id: str, metadata: Dict[str, Any]) -> None:
        if secret_id in self.secrets:
            self.secrets[secret_id]["metadata"] = copy.deepcopy(metadata)

    async def delete_secret(self, secret_id: str) -> None:
        if self.fail_deletes:
            raise PersistenceError()
        self.deleted.append(secret_id)
        self.secrets.pop(secret_id, None)


# =============================================================================
# Component fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_registry():
    StrategyRegistry.reset()
    yield
    StrategyRegistry.reset()


@pytest.fixture(autouse=True)
def plaintext_tokens(monkeypatch):
    """Token encryption off unless a test turns it on."""
    monkeypatch.setattr(config, "token_encryption_key", "")
    encryption.reset()
    yield
    encryption.reset()


@pytest.fixture
def team_settings() -> FakeSettingsClient:
    return FakeSettingsClient()


@pytest.fixture
def vault_backend() -> FakeVaultClient:
    return FakeVaultClient()


@pytest.fixture
def secret_cache() -> SecretCache:
    return SecretCache(ttl=3600, maxsize=16)


@pytest.fixture
def vault(vault_backend, team_settings, secret_cache) -> SecretVault:
    return SecretVault(vault_backend, team_settings, secret_cache)


@pytest.fixture
def connection_store(team_settings) -> ConnectionStore:
    return ConnectionStore(team_settings)


@pytest.fixture
def flow_store() -> FlowSessionStore:
    return FlowSessionStore(ttl=900, maxsize=100)


# =============================================================================
# App fixtures
# =============================================================================


@pytest.fixture
def app(team_settings, vault_backend, secret_cache, flow_store):
    from api.dependencies import get_settings_factory, get_vault_client
    from main import create_app

    application = create_app()
    application.state.secret_cache = secret_cache
    application.state.flow_store = flow_store
    application.dependency_overrides[get_settings_factory] = lambda: (
        lambda team_id, token: team_settings
    )
    application.dependency_overrides[get_vault_client] = lambda: vault_backend
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
