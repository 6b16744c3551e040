"""
Pydantic schemas for vault secrets.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# "ALL_NON_GLOBAL_KEYS" is a read-side shortcut: every secret not scoped "global".
ALL_NON_GLOBAL_KEYS = "ALL_NON_GLOBAL_KEYS"

VAULT_SCOPES = frozenset(
    {
        "global",
        "All",
        "APICall",
        "HuggingFace",
        "ZapierAction",
        "_hidden",
        ALL_NON_GLOBAL_KEYS,
        "CUSTOM_LLM",
        "OAUTH",
        "MANAGED_LLM",
    }
)

RECORD_FIELDS = frozenset({"name", "scope", "value", "owner", "team", "metadata", "isInvalid"})

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s_()\-@.]+$")
MAX_NAME_LENGTH = 300
MAX_VALUE_LENGTH = 10000


def _validate_scope(scope: List[str]) -> List[str]:
    cleaned = [item.strip() for item in scope if item and item.strip()]
    unknown = [item for item in cleaned if item not in VAULT_SCOPES]
    if unknown:
        raise ValueError(f"unknown scope(s): {', '.join(unknown)}")
    if len(set(cleaned)) != len(cleaned):
        raise ValueError("scope values must be unique")
    return cleaned


class SecretRecord(BaseModel):
    """A secret as the rest of the service sees it."""

    id: str
    name: str
    value: str = ""
    owner: Optional[str] = None
    scope: List[str] = Field(default_factory=list)
    team: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_backend(cls, secret: Dict[str, Any], team: str) -> "SecretRecord":
        """Map the backend shape ``{id, key, value, metadata}`` onto a record."""
        metadata = dict(secret.get("metadata") or {})
        raw_scope = metadata.get("scope") or "[]"
        try:
            scope = json.loads(raw_scope) if isinstance(raw_scope, str) else list(raw_scope)
        except ValueError:
            scope = []
        return cls(
            id=str(secret.get("id") or secret.get("secretId") or ""),
            name=secret.get("key") or secret.get("name") or "",
            value=secret.get("value") or "",
            owner=metadata.get("owner"),
            scope=scope,
            team=team,
            metadata=metadata,
        )

    def as_dict(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"id"})
        data["isInvalid"] = bool(self.metadata.get("isInvalid"))
        return data


class SecretEntry(BaseModel):
    """A secret submitted for writing."""

    id: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    value: str = Field(..., min_length=1, max_length=MAX_VALUE_LENGTH)
    scope: List[str] = Field(default_factory=list)
    owner: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = re.sub(r"\s+", " ", value.strip())
        if not value:
            return None
        if not NAME_PATTERN.match(value):
            raise ValueError("name contains unsupported characters")
        return value

    @field_validator("value")
    @classmethod
    def _strip_value(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("value must not be empty")
        return value

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value: List[str]) -> List[str]:
        return _validate_scope(value)

    def display_name(self, owner: str) -> str:
        """Explicit name, or ``"<scopes> - <owner>"`` when none was given."""
        if self.name:
            return self.name
        scope_str = ", ".join(self.scope) if self.scope else "Key"
        return f"{scope_str} - {owner}"


class SecretQuery(BaseModel):
    """Filters accepted by ``SecretVault.get``."""

    key_id: Optional[str] = None
    key_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    scope: List[str] = Field(default_factory=list)
    exclude_scope: List[str] = Field(default_factory=list)
    owner: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    metadata_filter: Optional[str] = None

    @field_validator("scope", "exclude_scope")
    @classmethod
    def _check_scope(cls, value: List[str]) -> List[str]:
        return _validate_scope(value)

    @field_validator("fields")
    @classmethod
    def _check_fields(cls, value: List[str]) -> List[str]:
        unknown = [f for f in value if f not in RECORD_FIELDS]
        if unknown:
            raise ValueError(f"unknown field(s): {', '.join(unknown)}")
        return list(dict.fromkeys(value))

    @field_validator("key_name")
    @classmethod
    def _check_key_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = re.sub(r"\s+", " ", value.strip())
        if value and not NAME_PATTERN.match(value):
            raise ValueError("key name contains unsupported characters")
        return value or None
