"""
Team settings store client — read / write team-scoped JSON setting blobs.

Every setting key (``oauth``, ``vault``, …) holds one JSON object that maps
entry ids to entry payloads.  Writes are read-modify-write of the whole blob:
the store has no per-entry endpoint.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import httpx

from config.settings import config
from utils.errors import PersistenceError

logger = logging.getLogger(__name__)

POLICY_FAIL = "fail"
POLICY_RETRY_ONCE = "retry_once"
POLICY_RETRY_ONCE_INVALIDATE = "retry_once_invalidate"
_POLICIES = {POLICY_FAIL, POLICY_RETRY_ONCE, POLICY_RETRY_ONCE_INVALIDATE}


class TeamSettingsClient:
    """
    HTTP client for one team's settings.

    Parameters
    ----------
    team_id : str
        Team whose settings are read and written.
    token : str
        Caller's id token, forwarded as a Bearer credential.
    forbidden_policy : str
        What to do when the store answers 403 (no team access):
        ``fail`` raises immediately, ``retry_once`` runs ``on_forbidden`` and
        retries a single time, ``retry_once_invalidate`` additionally drops the
        team's cached secrets before retrying.
    """

    def __init__(
        self,
        team_id: str,
        token: str = "",
        *,
        base_url: Optional[str] = None,
        forbidden_policy: Optional[str] = None,
        on_forbidden: Optional[Callable[[str], Awaitable[None]]] = None,
        secret_cache: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        policy = forbidden_policy or config.team_forbidden_policy
        if policy not in _POLICIES:
            raise ValueError(f"Unknown team forbidden policy '{policy}'")
        self.team_id = team_id
        self._token = token
        self._base_url = (base_url or config.settings_api_base_url).rstrip("/")
        self._policy = policy
        self._on_forbidden = on_forbidden
        self._secret_cache = secret_cache
        self._transport = transport

    # ── Public API ──────────────────────────────────────────────────────

    async def get(self, setting_key: str) -> Dict[str, Any]:
        """Return the setting blob for ``setting_key`` ({} when never written)."""
        resp = await self._request("GET", f"/teams/settings/{setting_key}")
        if resp.status_code == 404:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            logger.error("Team %s setting '%s' response is not JSON: %s", self.team_id, setting_key, exc)
            raise PersistenceError() from exc
        setting = body.get("setting") if isinstance(body, dict) else None
        if not isinstance(body, dict) or not isinstance(setting, (dict, type(None))):
            logger.error("Team %s setting '%s' response has an unexpected shape", self.team_id, setting_key)
            raise PersistenceError()

        raw = (setting or {}).get("settingValue") or "{}"
        try:
            settings = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError as exc:
            logger.error("Team %s setting '%s' is not valid JSON: %s", self.team_id, setting_key, exc)
            raise PersistenceError() from exc
        return settings if isinstance(settings, dict) else {}

    async def save_entry(self, setting_key: str, entry_id: str, data: Any) -> None:
        """Create or overwrite one entry inside the ``setting_key`` blob."""
        settings = await self.get(setting_key)
        settings[entry_id] = data
        await self._put(setting_key, settings)

    async def save_entries(self, setting_key: str, entries: Dict[str, Any]) -> None:
        """Create or overwrite several entries with a single write."""
        settings = await self.get(setting_key)
        settings.update(entries)
        await self._put(setting_key, settings)

    async def delete_entry(self, setting_key: str, entry_id: str) -> None:
        await self.delete_entries(setting_key, [entry_id])

    async def delete_entries(self, setting_key: str, entry_ids: Iterable[str]) -> None:
        settings = await self.get(setting_key)
        for entry_id in entry_ids:
            settings.pop(entry_id, None)
        await self._put(setting_key, settings)

    # ── Internals ───────────────────────────────────────────────────────

    async def _put(self, setting_key: str, settings: Dict[str, Any]) -> None:
        await self._request(
            "PUT",
            "/teams/settings",
            json={"settingKey": setting_key, "settingValue": json.dumps(settings)},
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Team-Id": self.team_id, "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=config.http_timeout,
            transport=self._transport,
        ) as client:
            return await client.request(method, path, headers=self._headers(), **kwargs)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempts = 1 if self._policy == POLICY_FAIL else 2
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._send(method, path, **kwargs)
            except httpx.HTTPError as exc:
                logger.error("Settings store %s %s failed: %s", method, path, exc)
                raise PersistenceError() from exc

            if resp.status_code == 403 and attempt < attempts:
                logger.warning(
                    "Settings store denied team %s access (%s %s), retrying once",
                    self.team_id, method, path,
                )
                await self._handle_forbidden()
                continue

            if resp.status_code == 404 and method == "GET":
                return resp
            if resp.status_code >= 400:
                logger.error(
                    "Settings store %s %s returned %d for team %s",
                    method, path, resp.status_code, self.team_id,
                )
                raise PersistenceError()
            return resp

        raise PersistenceError()  # pragma: no cover

    async def _handle_forbidden(self) -> None:
        if self._policy == POLICY_RETRY_ONCE_INVALIDATE and self._secret_cache is not None:
            self._secret_cache.invalidate(self.team_id)
        if self._on_forbidden is not None:
            await self._on_forbidden(self.team_id)
