"""Reconciliation error types and redaction of key material in messages."""

import re
from typing import Any


class ReconcileError(Exception):
    """Base class for errors that abort a reconciliation pass."""


class InvalidRootCAError(ReconcileError):
    """The root CA secret exists but is not a usable CA."""


class EtcdBootstrapFailedError(ReconcileError):
    """The etcd cluster failed to bootstrap and was deleted for recreation."""


class ReleaseLookupError(ReconcileError):
    """The release image could not be resolved to component images."""


class ResourceStoreError(ReconcileError):
    """A resource store operation failed for a reason other than not-found."""


REDACTED = "[REDACTED]"

# Key material and credentials that may surface in API errors or parse failures
_SECRET_VALUE_RE = re.compile(
    "|".join([
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----",
        r"client-key-data:\s*\S+",
        r"\"auths\"\s*:\s*\{[\s\S]*\}",
        r"Bearer\s+[A-Za-z0-9\-_\.]+",
    ])
)

# Secret data keys and field names whose values are never logged
SENSITIVE_FIELDS = frozenset({
    "password",
    "token",
    "private_key",
    "tls.key",
    "ca.key",
    "service-account.key",
    "kubeconfig",
    ".dockerconfigjson",
})

_SENSITIVE_FIELD_RE = re.compile(
    r"(?P<field>" + "|".join(re.escape(f) for f in sorted(SENSITIVE_FIELDS)) + r")[:=\s]+[^\s,;\)]+",
    re.IGNORECASE,
)


def sanitize_error_message(message: str) -> str:
    """Redact private keys, tokens and ``field: value`` pairs of sensitive fields."""
    sanitized = _SECRET_VALUE_RE.sub(REDACTED, message)
    return _SENSITIVE_FIELD_RE.sub(lambda m: f"{m.group('field')}: {REDACTED}", sanitized)


def sanitize_exception(error: Exception) -> str:
    return sanitize_error_message(str(error))


def sanitize_dict(data: dict[str, Any], sensitive_keys: set[str] | None = None) -> dict[str, Any]:
    """Copy ``data`` for logging, redacting sensitive keys at any depth.

    Args:
        data: Log fields or a Secret's data
        sensitive_keys: Key fragments redacted in addition to SENSITIVE_FIELDS

    Returns:
        Sanitized copy of ``data``
    """
    fragments = SENSITIVE_FIELDS | (sensitive_keys or set())

    def clean(key: str, value: Any) -> Any:
        if any(fragment in key.lower() for fragment in fragments):
            return REDACTED
        if isinstance(value, dict):
            return sanitize_dict(value, sensitive_keys)
        if isinstance(value, str):
            return sanitize_error_message(value)
        return value

    return {key: clean(key, value) for key, value in data.items()}
