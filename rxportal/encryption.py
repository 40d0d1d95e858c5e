"""Encryption of pharmacy integration secrets at rest.

Pharmacy API keys are stored as ``fernet:<token>`` strings.  Rows written
before encryption was introduced hold the plaintext key, so readers go through
:func:`reveal_api_key`, which accepts either form.

The Fernet key comes from ``PHARMACY_KEY_ENCRYPTION_KEY``; when unset a key is
generated once and kept in the application data directory.
"""

from __future__ import annotations

import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from rxportal.config import data_dir

_ENV_VAR = "PHARMACY_KEY_ENCRYPTION_KEY"
_KEY_FILENAME = "pharmacy.key"
_PREFIX = "fernet:"


def _load_key() -> bytes:
    value = os.getenv(_ENV_VAR)
    if value:
        return value.encode("utf-8")

    path = data_dir() / _KEY_FILENAME
    if path.exists():
        return path.read_bytes().strip()
    generated = Fernet.generate_key()
    path.write_bytes(generated)
    os.chmod(path, 0o600)
    return generated


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    return Fernet(_load_key())


def reset_cipher() -> None:
    """Forget the cached cipher so the key is resolved again."""

    _cipher.cache_clear()


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(_PREFIX)


def encrypt_api_key(plaintext: str) -> str:
    """Return ``plaintext`` encrypted for storage."""

    token = _cipher().encrypt(plaintext.encode("utf-8"))
    return _PREFIX + token.decode("ascii")


def decrypt_api_key(stored: str) -> str:
    """Return the plaintext for a value produced by :func:`encrypt_api_key`."""

    if not is_encrypted(stored):
        raise ValueError("API key is not encrypted")
    try:
        return _cipher().decrypt(stored[len(_PREFIX):].encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("API key could not be decrypted") from exc


def reveal_api_key(stored: str) -> str:
    return decrypt_api_key(stored) if is_encrypted(stored) else stored


__all__ = [
    "decrypt_api_key",
    "encrypt_api_key",
    "is_encrypted",
    "reset_cipher",
    "reveal_api_key",
]
