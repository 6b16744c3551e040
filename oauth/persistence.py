"""
TokenPersistence — merges fresh tokens into a team's stored connection.

Whatever shape the entry had before (legacy flat, current nested, or
nothing), the result is written in the current shape: tokens under
``auth_data``, provider config under ``auth_settings``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from config.settings import config
from oauth.flow import FlowSession
from oauth.models import AuthData, CurrentEntry, base_settings, merge_settings
from oauth.schemas import TokenResult
from oauth.store import ConnectionStore

logger = logging.getLogger(__name__)


def fallback_lifetime(
    authorization_url: Optional[str],
    table: Optional[Dict[str, Dict[str, int]]] = None,
) -> Optional[int]:
    """Documented token lifetime (seconds, minus safety buffer) for the auth host."""
    if not authorization_url:
        return None
    host = urlparse(authorization_url).hostname
    if not host:
        return None
    entry = (config.provider_expiration_times if table is None else table).get(host)
    if not entry:
        return None
    return int(entry.get("expires_in_seconds", 0)) - int(entry.get("buffer_seconds", 0))


def expiry_timestamp(
    expires_in: Optional[int],
    authorization_url: Optional[str],
    now: float,
) -> str:
    """Absolute expiry in epoch milliseconds as a string, ``""`` when unknown."""
    seconds = expires_in
    if seconds is None:
        seconds = fallback_lifetime(authorization_url)
    if seconds is None:
        return ""
    return str(int(now * 1000) + int(seconds) * 1000)


class TokenPersistence:
    """Writes the outcome of a successful exchange through :class:`ConnectionStore`."""

    def __init__(self, store: ConnectionStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def store(self, tokens: TokenResult, flow: FlowSession) -> CurrentEntry:
        """
        Merge ``tokens`` and the flow's provider config into the entry for
        ``flow.entry_id`` and overwrite it.

        Raises
        ------
        PersistenceError – the settings store refused the read or the write
        """
        existing = await self._store.load_raw(flow.entry_id)
        incoming: Dict[str, Any] = {**flow.provider_config, "type": flow.kind.value}
        # refresh needs the endpoint the token came from (access token URL for OAuth1).
        # Submitted text wins: it may hold {{KEY(...)}} templates that must not be
        # replaced by their resolved values.
        if "tokenURL" not in flow.provider_config:
            token_url = flow.provider_config.get("accessTokenURL") or flow.token_url
            if token_url:
                incoming["tokenURL"] = token_url
        settings = merge_settings(base_settings(existing), incoming)

        entry = CurrentEntry(
            auth_data=AuthData(
                primary=tokens.primary,
                secondary=tokens.secondary or "",
                expires_in=expiry_timestamp(
                    tokens.expires_in, flow.authorization_url, self._clock()
                ),
            ),
            auth_settings=settings,
        )
        await self._store.save(flow.entry_id, entry)
        logger.info(
            "Stored %s connection %s for team %s (migrated=%s)",
            flow.kind.value,
            flow.entry_id,
            flow.team_id,
            existing is not None and not _is_current(existing),
        )
        return entry


def _is_current(raw: Any) -> bool:
    return isinstance(raw, dict) and ("auth_data" in raw or "auth_settings" in raw)
