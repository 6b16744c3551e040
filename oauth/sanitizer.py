"""
Redaction of sensitive values before a record leaves the service.

Two rules apply to every string field of a connection record (``auth_data``,
``auth_settings``, the root of legacy entries, and any nested object):

1. fields whose *name* is sensitive (tokens, secrets, passwords, …) are
   replaced with :data:`REDACTED`;
2. any other string longer than :data:`MIN_SUSPECT_LENGTH`, in a field that
   is not a known configuration field, is redacted when it *contains* something
   credential-shaped: a compact signed token (``header.payload.signature``)
   or an opaque high-entropy run, whether it is the whole value or embedded
   in one (``Bearer ...``, a signed webhook URL).

Inputs are never mutated.
"""

from __future__ import annotations

import re
from typing import Any, Dict

REDACTED = "[REDACTED]"
MIN_SUSPECT_LENGTH = 32

# Compared after lower-casing and dropping "_" / "-".
SENSITIVE_FIELDS = frozenset(
    {
        "primary",
        "secondary",
        "token",
        "accesstoken",
        "refreshtoken",
        "idtoken",
        "tokensecret",
        "clientsecret",
        "consumersecret",
        "secret",
        "password",
        "apikey",
        "codeverifier",
        "requesttokensecret",
        "value",
        "key",
    }
)
_SENSITIVE_SUFFIXES = ("token", "secret", "password", "apikey")

PERMITTED_CONFIG_FIELDS = frozenset(
    {
        "name",
        "platform",
        "service",
        "type",
        "scope",
        "clientID",
        "consumerKey",
        "authorizationURL",
        "tokenURL",
        "requestTokenURL",
        "accessTokenURL",
        "userAuthorizationURL",
        "callbackURL",
        "oauth2CallbackURL",
        "oauth1CallbackURL",
        "oauth_keys_prefix",
        "expires_in",
        "owner",
        "team",
    }
)

# header.payload.signature, base64url segments; signature may be empty (alg=none)
_COMPACT_TOKEN = re.compile(
    r"[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.(?:[A-Za-z0-9_-]{8,}|(?![A-Za-z0-9_.-]))"
)
_OPAQUE_TOKEN = re.compile(r"^[A-Za-z0-9._~+/=:-]+$")
# an opaque token embedded in a larger value ("Bearer ...", "?sig=...")
_OPAQUE_RUN = re.compile(r"[A-Za-z0-9_~+/=-]{%d,}" % (MIN_SUSPECT_LENGTH + 1))


def is_sensitive_field(name: str) -> bool:
    normalized = name.lower().replace("_", "").replace("-", "")
    if normalized in SENSITIVE_FIELDS:
        return True
    return normalized.endswith(_SENSITIVE_SUFFIXES)


def _mixed(text: str) -> bool:
    return any(c.isalpha() for c in text) and any(c.isdigit() for c in text)


def looks_like_credential(value: str) -> bool:
    """True when the value is, or contains, a compact signed token or an opaque high-entropy string."""
    if len(value) <= MIN_SUSPECT_LENGTH:
        return False
    if _COMPACT_TOKEN.search(value):
        return True
    if _OPAQUE_TOKEN.match(value) and "://" not in value and _mixed(value):
        return True
    return any(_mixed(run) for run in _OPAQUE_RUN.findall(value))


def _sanitize_value(name: str, value: Any) -> Any:
    if isinstance(value, dict):
        return _sanitize_mapping(value)
    if isinstance(value, list):
        return [_sanitize_value(name, item) for item in value]
    if not isinstance(value, str):
        return value
    if is_sensitive_field(name):
        return REDACTED if value else value
    if name not in PERMITTED_CONFIG_FIELDS and looks_like_credential(value):
        return REDACTED
    return value


def _sanitize_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _sanitize_value(str(key), value) for key, value in data.items()}


def sanitize_connection(record: Any) -> Any:
    """
    Redacted copy of a connection entry, in whichever shape it was stored.

    ``auth_data`` and ``auth_settings`` are walked like any other nested
    object, so the current shape and the legacy root are both covered.
    """
    if not isinstance(record, dict):
        return record
    return _sanitize_mapping(record)


def sanitize_secret(record: Any) -> Any:
    """Redacted copy of a vault record (``value`` is always hidden)."""
    if not isinstance(record, dict):
        return record
    return _sanitize_mapping(record)
