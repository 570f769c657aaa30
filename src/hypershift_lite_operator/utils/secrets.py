"""Utilities for reading and writing Secret data blobs."""

from __future__ import annotations

import base64
from typing import Any, Iterable


def secret_keys(secret: dict[str, Any]) -> set[str]:
    """Return the set of keys present in a secret's data."""
    return set((secret.get("data") or {}).keys())


def has_exact_keys(secret: dict[str, Any], expected_keys: Iterable[str]) -> bool:
    """Check that a secret holds exactly the expected keys, each non-empty.

    Args:
        secret: Secret object
        expected_keys: Keys the secret must contain, and nothing else

    Returns:
        True if the key sets match and no value is empty
    """
    data = secret.get("data") or {}
    expected = set(expected_keys)
    if set(data.keys()) != expected:
        return False
    return all(data[key] for key in expected)


def get_secret_bytes(secret: dict[str, Any], key: str) -> bytes | None:
    """Get a decoded value from a secret.

    Args:
        secret: Secret object with base64-encoded data
        key: Key in the secret

    Returns:
        Decoded bytes, or None if the key is absent
    """
    value = (secret.get("data") or {}).get(key)
    if value is None:
        return None
    if isinstance(value, bytes):
        return value
    return base64.b64decode(value)


def set_secret_bytes(secret: dict[str, Any], key: str, value: bytes) -> None:
    """Store raw bytes under a key, base64-encoded as the API expects."""
    if secret.get("data") is None:
        secret["data"] = {}
    secret["data"][key] = base64.b64encode(value).decode("utf-8")

