"""
ConnectionValidator — answers "is this connection usable?" and signs out.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from oauth.models import (
    AuthData,
    CurrentEntry,
    LegacyEntry,
    entry_id_for,
    normalize,
    parse_entry,
)
from oauth.store import ConnectionStore
from utils.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

ALREADY_SIGNED_OUT = "Already signed out."
SIGNED_OUT = "Signed out successfully."


class ConnectionValidator:
    def __init__(self, store: ConnectionStore) -> None:
        self._store = store

    async def check(self, candidate: Dict[str, Any]) -> bool:
        """
        True when a stored connection matches every field of ``candidate``
        (except ``oauth_keys_prefix``) and holds a primary token.

        Raises :class:`NotFound` when there is no entry for the prefix.
        """
        prefix = _prefix(candidate)
        raw = await self._store.load_raw(entry_id_for(prefix))
        if raw is None:
            raise NotFound("OAuth connection not found.")

        entry = normalize(raw)
        if entry is None:
            logger.warning("Unparseable connection entry %s for team %s", prefix, self._store.team_id)
            return False

        settings = entry.auth_settings
        for key, value in candidate.items():
            if key == "oauth_keys_prefix":
                continue
            if settings.get(key) != value:
                return False

        return entry.has_token or _legacy_primary(raw)

    async def sign_out(self, prefix: str, invalidate: Optional[bool]) -> Dict[str, Any]:
        """
        Clear the tokens of a connection while keeping its settings.

        A connection without a primary token is left untouched.
        """
        if invalidate is not True:
            raise ValidationError("invalidateAuthentication must be true.")
        if not prefix:
            raise ValidationError("oauth_keys_prefix is required.")

        entry_id = entry_id_for(prefix)
        raw = await self._store.load_raw(entry_id)
        if raw is None:
            raise NotFound("OAuth connection not found.")

        entry = normalize(raw)
        if entry is None or not (entry.has_token or _legacy_primary(raw)):
            return {"invalidate": True, "message": ALREADY_SIGNED_OUT}

        await self._store.save(
            entry_id,
            CurrentEntry(auth_data=AuthData(), auth_settings=entry.auth_settings),
        )
        logger.info("Signed out connection %s for team %s", entry_id, self._store.team_id)
        return {"invalidate": True, "message": SIGNED_OUT}


def _prefix(candidate: Dict[str, Any]) -> str:
    prefix = candidate.get("oauth_keys_prefix")
    if not isinstance(prefix, str) or not prefix.strip():
        raise ValidationError("oauth_keys_prefix is required.")
    return prefix.strip()


def _legacy_primary(raw: Any) -> bool:
    """Older writers kept the token at the root, sometimes next to auth_data."""
    entry = parse_entry(raw)
    if isinstance(entry, LegacyEntry):
        return bool(entry.fields.get("primary"))
    return isinstance(raw, dict) and bool(raw.get("primary"))
