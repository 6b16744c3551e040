"""
VaultClient — thin async HTTP client for the secrets backend.

All calls are scoped to one team and authenticated with the caller's id
token.  Transport and HTTP errors are logged and re-raised as
``PersistenceError`` so nothing about the backend leaks to callers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from config.settings import config
from utils.errors import PersistenceError

logger = logging.getLogger(__name__)


class VaultClient:
    """Secrets backend for a single team."""

    def __init__(
        self,
        team_id: str,
        token: str,
        *,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.team_id = team_id
        self._token = token
        self._base_url = (base_url or config.vault_api_base_url).rstrip("/")
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        if not self._token:
            raise PersistenceError("Missing id token.")
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=config.http_timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(
                    method,
                    path,
                    headers={"Authorization": f"Bearer {self._token}"},
                    **kwargs,
                )
        except httpx.HTTPError as exc:
            logger.error("Vault %s %s failed: %s", method, path, exc)
            raise PersistenceError() from exc

        if allow_404 and resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.error(
                "Vault %s %s returned %d for team %s",
                method, path, resp.status_code, self.team_id,
            )
            raise PersistenceError()
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            logger.error(
                "Vault %s %s returned a non-JSON body for team %s",
                resp.request.method, resp.request.url.path, self.team_id,
            )
            raise PersistenceError() from exc

    def _object(self, resp: httpx.Response) -> Dict[str, Any]:
        data = self._json(resp)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.error(
                "Vault %s %s returned %s instead of an object for team %s",
                resp.request.method, resp.request.url.path, type(data).__name__, self.team_id,
            )
            raise PersistenceError()
        return data

    def _secrets_path(self, suffix: str = "") -> str:
        return f"/vault/{quote(self.team_id, safe='')}/secrets{suffix}"

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_all_secrets(self, metadata_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"metadataFilter": metadata_filter} if metadata_filter else None
        resp = await self._request("GET", self._secrets_path(), params=params)
        return list(self._object(resp).get("secrets") or [])

    async def get_secret(
        self,
        secret_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fetch one secret by id (preferred) or by name; None when absent."""
        if secret_id:
            path = self._secrets_path(f"/{quote(secret_id, safe='')}")
        elif name:
            path = self._secrets_path(f"/name/{quote(name, safe='')}")
        else:
            return None
        resp = await self._request("GET", path, allow_404=True)
        if resp is None:
            return None
        return self._object(resp).get("secret") or None

    async def secret_exists(
        self,
        secret_id: Optional[str] = None,
        name: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> bool:
        if secret_id:
            path = self._secrets_path(f"/{quote(secret_id, safe='')}/exists")
            params = None
        elif name:
            path = self._secrets_path(f"/name/{quote(name, safe='')}/exists")
            params = {"excludeId": exclude_id} if exclude_id else None
        else:
            return False
        resp = await self._request("GET", path, params=params)
        data = self._json(resp)
        if isinstance(data, dict):
            return bool(data.get("exists"))
        return bool(data)

    async def count(self) -> int:
        resp = await self._request(
            "GET", f"/vault/{quote(self.team_id, safe='')}/count/secrets"
        )
        return int(self._object(resp).get("count") or 0)

    # ── Writes ──────────────────────────────────────────────────────────

    async def set_secret(
        self,
        secret_id: str,
        name: str,
        value: str,
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            "/vault/secret",
            json={
                "teamId": self.team_id,
                "secretId": secret_id,
                "key": name,
                "value": value,
                "metadata": metadata,
            },
        )
        return self._object(resp)

    async def update_metadata(self, secret_id: str, metadata: Dict[str, Any]) -> None:
        await self._request(
            "PUT",
            self._secrets_path(f"/{quote(secret_id, safe='')}/metadata"),
            json={"metadata": metadata},
        )

    async def delete_secret(self, secret_id: str) -> None:
        await self._request(
            "DELETE",
            self._secrets_path(f"/{quote(secret_id, safe='')}"),
            allow_404=True,
        )
