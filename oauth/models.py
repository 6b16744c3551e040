"""
Stored connection entries and the schema migration between their shapes.

Two shapes exist in the team settings store under ``<PREFIX>_TOKENS``:

* legacy — one flat object: tokens (``primary``, ``secondary``,
  ``expires_in``) next to provider config, the team id, and optionally a
  nested ``oauth_info`` bag with the original provider fields;
* current — ``{auth_data: {...tokens}, auth_settings: {...config, name}}``.

``normalize()`` turns either into a :class:`CurrentEntry` and is the only
place that looks at which shape it was given.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TOKEN_FIELDS = ("primary", "secondary", "expires_in")
DISALLOWED_SETTINGS_FIELDS = ("team",)
PROVIDER_INFO_BAG = "oauth_info"
ENTRY_SUFFIX = "_TOKENS"


def entry_id_for(prefix: str) -> str:
    """``"<PREFIX>_TOKENS"`` — the key a connection lives under."""
    return f"{prefix}{ENTRY_SUFFIX}"


class AuthData(BaseModel):
    primary: str = ""
    secondary: str = ""
    expires_in: str = ""


class CurrentEntry(BaseModel):
    kind: Literal["current"] = "current"
    auth_data: AuthData = Field(default_factory=AuthData)
    auth_settings: Dict[str, Any] = Field(default_factory=lambda: {"name": ""})

    @property
    def has_token(self) -> bool:
        return bool(self.auth_data.primary)

    def to_storage(self) -> Dict[str, Any]:
        return {
            "auth_data": self.auth_data.model_dump(),
            "auth_settings": copy.deepcopy(self.auth_settings),
        }


class LegacyEntry(BaseModel):
    kind: Literal["legacy"] = "legacy"
    fields: Dict[str, Any] = Field(default_factory=dict)


ConnectionEntry = Union[LegacyEntry, CurrentEntry]


# ── Parsing ────────────────────────────────────────────────────────────


def parse_entry(raw: Any) -> Optional[ConnectionEntry]:
    """
    Tag a stored value with its shape.

    Accepts dicts or JSON strings (older writers stored strings).  Returns
    None for anything that is not an object.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Stored connection entry is not valid JSON")
            return None
    if not isinstance(raw, dict):
        return None

    if "auth_data" in raw or "auth_settings" in raw:
        auth_data = raw.get("auth_data") or {}
        return CurrentEntry(
            auth_data=AuthData(**{k: _as_str(auth_data.get(k)) for k in TOKEN_FIELDS}),
            auth_settings=dict(raw.get("auth_settings") or {}),
        )
    return LegacyEntry(fields=dict(raw))


def base_settings(raw: Any) -> Dict[str, Any]:
    """
    Settings a merge starts from: ``auth_settings`` for the current shape,
    the flat object minus its tokens for the legacy one.  The provider-info
    bag is left in place.
    """
    entry = parse_entry(raw)
    if entry is None:
        return {}
    if isinstance(entry, CurrentEntry):
        return copy.deepcopy(entry.auth_settings)
    return {k: copy.deepcopy(v) for k, v in entry.fields.items() if k not in TOKEN_FIELDS}


def normalize(raw: Any) -> Optional[CurrentEntry]:
    """Any stored shape → :class:`CurrentEntry` (None when unparseable)."""
    entry = parse_entry(raw)
    if entry is None:
        return None
    if isinstance(entry, CurrentEntry):
        return CurrentEntry(
            auth_data=entry.auth_data,
            auth_settings=merge_settings(entry.auth_settings, {}),
        )
    fields = entry.fields
    return CurrentEntry(
        auth_data=AuthData(**{k: _as_str(fields.get(k)) for k in TOKEN_FIELDS}),
        auth_settings=merge_settings(base_settings(fields), {}),
    )


# ── Settings merge ─────────────────────────────────────────────────────


def merge_settings(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """
    Lay ``incoming`` provider config over ``base`` settings.

    When both sides carry an ``oauth_info`` bag the bags are deep-merged
    first; the (merged) bag is then flattened into the settings and removed.
    Precedence: base fields < bag fields < incoming fields.  Token fields and
    disallowed fields are stripped and ``name`` always exists.
    """
    base_flat, old_bag = _split_bag(base)
    new_flat, new_bag = _split_bag(incoming)

    if old_bag and new_bag:
        bag = deep_merge(old_bag, new_bag)
    else:
        bag = new_bag or old_bag

    merged: Dict[str, Any] = {}
    merged.update(base_flat)
    merged.update(bag)
    merged.update(new_flat)
    return clean_settings(merged)


def clean_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {
        k: v
        for k, v in settings.items()
        if k not in TOKEN_FIELDS and k not in DISALLOWED_SETTINGS_FIELDS and k != PROVIDER_INFO_BAG
    }
    if not isinstance(cleaned.get("name"), str):
        cleaned["name"] = "" if cleaned.get("name") is None else str(cleaned["name"])
    return cleaned


def deep_merge(left: Dict[str, Any], right: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; ``right`` wins on conflicts."""
    result = copy.deepcopy(left)
    for key, value in right.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _split_bag(settings: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    settings = copy.deepcopy(settings or {})
    bag = settings.pop(PROVIDER_INFO_BAG, None)
    if isinstance(bag, str):
        try:
            bag = json.loads(bag)
        except ValueError:
            bag = None
    return settings, bag if isinstance(bag, dict) else {}


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
