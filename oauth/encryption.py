"""
Token keyring — encrypts connection tokens before they reach the settings store.

``TOKEN_ENCRYPTION_KEY`` holds one or more comma-separated Fernet keys.  The
first key encrypts; every key is tried on decrypt, so a key can be rotated by
prepending the new one and dropping the old one once entries are rewritten.

With no key configured, tokens are stored as plaintext.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from config.settings import config

logger = logging.getLogger(__name__)

_keyring: Optional[MultiFernet] = None
_loaded = False


def _parse_keys(raw: str) -> List[Fernet]:
    return [Fernet(part.strip().encode()) for part in raw.split(",") if part.strip()]


def _load() -> None:
    global _keyring, _loaded
    _loaded = True
    _keyring = None

    if not config.token_encryption_key:
        logger.warning("TOKEN_ENCRYPTION_KEY not set, connection tokens are stored as plaintext.")
        return
    try:
        keys = _parse_keys(config.token_encryption_key)
    except (ValueError, TypeError) as exc:
        logger.error("Invalid TOKEN_ENCRYPTION_KEY, token encryption disabled: %s", exc)
        return
    if keys:
        _keyring = MultiFernet(keys)
        logger.info("Token encryption enabled with %d key(s)", len(keys))


def _get() -> Optional[MultiFernet]:
    if not _loaded:
        _load()
    return _keyring


def reset() -> None:
    """Forget the loaded keyring; the next call re-reads the config."""
    global _keyring, _loaded
    _keyring = None
    _loaded = False


def encrypt_token(plaintext: str) -> str:
    """Empty stays empty, so a signed-out entry is recognisable without a key."""
    keyring = _get()
    if not plaintext or keyring is None:
        return plaintext
    return keyring.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str) -> str:
    # values written before a key was configured are not Fernet tokens
    keyring = _get()
    if not ciphertext or keyring is None:
        return ciphertext
    try:
        return keyring.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    return _get() is not None
