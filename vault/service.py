"""
SecretVault — team-scoped CRUD over the secrets backend.

Reads of the whole team map go through an injected :class:`SecretCache`;
every mutation invalidates the team's cache entry before returning, so a
read that follows a write on the same process is always fresh.  Each
secret also has a value-less projection in the team settings store
(setting key ``vault``).
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from teams.settings_client import TeamSettingsClient
from utils.errors import (
    NotFound,
    PersistenceError,
    ValidationError,
    summarize_validation_error,
)
from vault.cache import SecretCache
from vault.client import VaultClient
from vault.schemas import ALL_NON_GLOBAL_KEYS, SecretEntry, SecretQuery, SecretRecord

logger = logging.getLogger(__name__)

SETTINGS_KEY = "vault"
NAME_TAKEN = "Key Name must be unique."


class SecretVault:
    """Secrets of one team, backed by :class:`VaultClient`."""

    def __init__(
        self,
        backend: VaultClient,
        settings: TeamSettingsClient,
        cache: SecretCache,
        *,
        aliases: Optional[Dict[str, str]] = None,
    ) -> None:
        self.team_id = backend.team_id
        self._backend = backend
        self._settings = settings
        self._cache = cache
        # canonical id → older alias id still holding the value
        self._aliases = dict(config.legacy_key_aliases if aliases is None else aliases)

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, query: Optional[SecretQuery] = None) -> Dict[str, Any]:
        """
        Look secrets up.

        With ``key_id`` / ``key_name`` this is a direct backend lookup and
        returns one record (``{}`` when absent).  Otherwise the whole team map
        is loaded (through the cache), filtered, and returned as
        ``{secret_id: record}``.
        """
        query = query or SecretQuery()

        if query.key_id or query.key_name:
            return await self._get_one(query)

        all_secrets = await self._load_all(query.metadata_filter)
        filtered = {
            secret_id: dict(record)
            for secret_id, record in all_secrets.items()
            if self._matches(record, query)
        }

        for canonical, alias in self._aliases.items():
            if canonical not in filtered and alias in filtered:
                record = filtered.pop(alias)
                record["name"] = self._alias_label(canonical)
                filtered[canonical] = record

        if query.fields:
            return {sid: self._project(rec, query.fields) for sid, rec in filtered.items()}
        return filtered

    async def exists(
        self,
        key_id: Optional[str] = None,
        key_name: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> bool:
        return await self._backend.secret_exists(
            secret_id=key_id, name=key_name, exclude_id=exclude_id
        )

    async def count(self) -> int:
        """Number of secrets for the team, straight from the backend."""
        return await self._backend.count()

    # ── Writes ──────────────────────────────────────────────────────────

    async def set(
        self,
        entry: Union[SecretEntry, Dict[str, Any]],
        owner: str,
        key_id: Optional[str] = None,
    ) -> str:
        """Create (no ``key_id``) or overwrite one secret; returns its id."""
        entry = self._parse_entry(entry)
        if not owner:
            raise ValidationError("Missing secret owner.")

        name = entry.display_name(owner)
        if await self._backend.secret_exists(name=name, exclude_id=key_id):
            raise ValidationError(NAME_TAKEN)

        secret_id = key_id or entry.id or self._new_id()
        try:
            await self._write(secret_id, entry, name, owner)
            await self._settings.save_entry(
                SETTINGS_KEY, secret_id, self._projection(entry, name, owner)
            )
        finally:
            self._cache.invalidate(self.team_id)
        return secret_id

    async def set_multiple(
        self,
        entries: Iterable[Union[SecretEntry, Dict[str, Any]]],
        owner: str,
    ) -> List[str]:
        """
        Validate and write a batch of secrets.

        Every entry is validated first.  If any entry without an explicit id
        collides by name with an existing team secret (or with another entry
        of the batch), nothing is written.
        """
        if not owner:
            raise ValidationError("Missing secret owner.")
        parsed = [self._parse_entry(entry) for entry in entries]
        if not parsed:
            return []

        existing = await self._load_all(fresh=True)
        taken = {str(rec.get("name", "")).lower() for rec in existing.values()}
        batch_names = set()
        for entry in parsed:
            if entry.id:
                continue
            name = entry.display_name(owner).lower()
            if name in taken or name in batch_names:
                logger.info("Rejected secret batch for team %s: duplicate name", self.team_id)
                raise ValidationError(NAME_TAKEN)
            batch_names.add(name)

        ids: List[str] = []
        projections: Dict[str, Any] = {}
        try:
            for entry in parsed:
                secret_id = entry.id or self._new_id()
                name = entry.display_name(owner)
                await self._write(secret_id, entry, name, owner)
                projections[secret_id] = self._projection(entry, name, owner)
                ids.append(secret_id)
            await self._settings.save_entries(SETTINGS_KEY, projections)
        finally:
            self._cache.invalidate(self.team_id)

        logger.info("Stored %d secrets for team %s", len(ids), self.team_id)
        return ids

    async def delete(self, key_id: str) -> None:
        """
        Remove a secret's settings projection, then the backend secret.

        Backend failures are logged and do not stop the projection removal;
        the two stores can drift apart when that happens.
        """
        await self.delete_multiple([key_id])

    async def delete_multiple(self, key_ids: Iterable[str]) -> None:
        key_ids = [k for k in key_ids if k]
        if not key_ids:
            return

        projection_error: Optional[PersistenceError] = None
        try:
            await self._settings.delete_entries(SETTINGS_KEY, key_ids)
        except PersistenceError as exc:
            projection_error = exc

        for key_id in key_ids:
            targets = [key_id]
            if key_id in self._aliases:
                targets.append(self._aliases[key_id])
            for secret_id in targets:
                try:
                    await self._backend.delete_secret(secret_id)
                except PersistenceError:
                    logger.warning(
                        "Error deleting secret %s from the vault backend (team %s)",
                        secret_id, self.team_id, exc_info=True,
                    )

        self._cache.invalidate(self.team_id)
        if projection_error is not None:
            raise PersistenceError("Something went wrong, deleting failed!") from projection_error

    async def make_invalid(self, key_id: str) -> None:
        """Flag a secret as invalid in the projection and the backend."""
        all_secrets = await self._load_all()
        record = all_secrets.get(key_id)
        if record is None:
            raise NotFound("Key not found.")

        projection = {k: v for k, v in record.items() if k != "value"}
        projection["isInvalid"] = True
        try:
            await self._settings.save_entry(SETTINGS_KEY, key_id, projection)
        finally:
            self._cache.invalidate(self.team_id)

        try:
            metadata = dict(record.get("metadata") or {})
            metadata["isInvalid"] = True
            await self._backend.update_metadata(key_id, metadata)
        except PersistenceError:
            logger.warning("Error marking secret %s invalid in the vault backend", key_id, exc_info=True)

    # ── Internals ───────────────────────────────────────────────────────

    async def _get_one(self, query: SecretQuery) -> Dict[str, Any]:
        secret = await self._backend.get_secret(secret_id=query.key_id, name=query.key_name)
        label = None
        if not secret and query.key_id in self._aliases:
            secret = await self._backend.get_secret(secret_id=self._aliases[query.key_id])
            label = self._alias_label(query.key_id)
        if not secret:
            return {}

        record = SecretRecord.from_backend(secret, self.team_id).as_dict()
        if label:
            record["name"] = label
        if query.fields:
            return self._project(record, query.fields)
        return record

    async def _load_all(
        self,
        metadata_filter: Optional[str] = None,
        *,
        fresh: bool = False,
    ) -> Dict[str, Dict[str, Any]]:
        cacheable = not metadata_filter
        if cacheable and not fresh:
            cached = self._cache.get(self.team_id)
            if cached is not None:
                return cached

        secrets = await self._backend.get_all_secrets(metadata_filter)
        mapped: Dict[str, Dict[str, Any]] = {}
        for secret in secrets:
            record = SecretRecord.from_backend(secret, self.team_id)
            if record.id:
                mapped[record.id] = record.as_dict()

        if cacheable:
            self._cache.set(self.team_id, mapped)
        return mapped

    def _matches(self, record: Dict[str, Any], query: SecretQuery) -> bool:
        scope = record.get("scope") or []

        if record.get("team") != self.team_id:
            return False
        if query.scope:
            in_scope = (
                ALL_NON_GLOBAL_KEYS in query.scope and "global" not in scope
            ) or any(item in scope for item in query.scope)
            if not in_scope:
                return False
        if query.exclude_scope and any(item in scope for item in query.exclude_scope):
            return False
        if query.owner and record.get("owner") != query.owner:
            return False
        if query.key_name and str(record.get("name", "")).lower() != query.key_name.lower():
            return False
        if query.metadata:
            metadata = record.get("metadata") or {}
            if any(metadata.get(k) != v for k, v in query.metadata.items()):
                return False
        return True

    async def _write(self, secret_id: str, entry: SecretEntry, name: str, owner: str) -> None:
        await self._backend.set_secret(
            secret_id,
            name,
            entry.value,
            {
                **entry.metadata,
                "owner": owner,
                "scope": json.dumps(entry.scope),
            },
        )

    def _projection(self, entry: SecretEntry, name: str, owner: str) -> Dict[str, Any]:
        return {
            "name": name,
            "scope": entry.scope,
            "owner": owner,
            "team": self.team_id,
            "isSynced": True,
        }

    @staticmethod
    def _parse_entry(entry: Union[SecretEntry, Dict[str, Any]]) -> SecretEntry:
        if isinstance(entry, SecretEntry):
            return entry
        try:
            return SecretEntry.model_validate(entry)
        except PydanticValidationError as exc:
            raise ValidationError(summarize_validation_error(exc)) from None

    @staticmethod
    def _project(record: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
        return {f: record[f] for f in fields if f in record}

    @staticmethod
    def _alias_label(canonical: str) -> str:
        return canonical[:1].upper() + canonical[1:]

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex
