"""
ConnectionStore — load boundary for stored connection entries.

Reads the team's ``oauth`` setting blob, parses JSON-string entries, and
decrypts token fields in both the current (``auth_data``) and legacy (root)
locations.  Writes always use the current shape with tokens encrypted.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Optional

from oauth.encryption import decrypt_token, encrypt_token
from oauth.models import ENTRY_SUFFIX, CurrentEntry, normalize
from teams.settings_client import TeamSettingsClient

logger = logging.getLogger(__name__)

SETTINGS_KEY = "oauth"
_SECRET_TOKEN_FIELDS = ("primary", "secondary")


class ConnectionStore:
    def __init__(self, settings: TeamSettingsClient) -> None:
        self._settings = settings

    @property
    def team_id(self) -> str:
        return self._settings.team_id

    async def load_raw(self, entry_id: str) -> Any:
        """Stored value for ``entry_id`` with tokens decrypted (None if absent)."""
        blob = await self._settings.get(SETTINGS_KEY)
        if entry_id not in blob or blob[entry_id] is None:
            return None
        return _decrypt_entry(blob[entry_id])

    async def load(self, entry_id: str) -> Optional[CurrentEntry]:
        raw = await self.load_raw(entry_id)
        if raw is None:
            return None
        return normalize(raw)

    async def save(self, entry_id: str, entry: CurrentEntry) -> None:
        data = entry.to_storage()
        for field in _SECRET_TOKEN_FIELDS:
            data["auth_data"][field] = encrypt_token(data["auth_data"][field])
        await self._settings.save_entry(SETTINGS_KEY, entry_id, data)

    async def delete(self, entry_id: str) -> None:
        await self._settings.delete_entry(SETTINGS_KEY, entry_id)

    async def list_raw(self) -> Dict[str, Any]:
        """Every ``*_TOKENS`` entry of the team, tokens decrypted."""
        blob = await self._settings.get(SETTINGS_KEY)
        return {
            entry_id: _decrypt_entry(value)
            for entry_id, value in blob.items()
            if entry_id.endswith(ENTRY_SUFFIX) and value is not None
        }


def _decrypt_entry(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return raw
    if not isinstance(raw, dict):
        return raw

    entry = copy.deepcopy(raw)
    for field in _SECRET_TOKEN_FIELDS:
        if isinstance(entry.get(field), str):
            entry[field] = decrypt_token(entry[field])
    auth_data = entry.get("auth_data")
    if isinstance(auth_data, dict):
        for field in _SECRET_TOKEN_FIELDS:
            if isinstance(auth_data.get(field), str):
                auth_data[field] = decrypt_token(auth_data[field])
    return entry
