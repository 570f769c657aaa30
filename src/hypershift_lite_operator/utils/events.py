"""Kubernetes events attached to KubernetesService resources."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
)
from .errors import sanitize_error_message

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = EVENT_TYPE_NORMAL,
) -> None:
    """Post an event about a resource.

    Events are readable by anyone who can list events in the namespace, so
    the message is sanitized first. Matches the engine's event recorder
    signature.

    Args:
        body: Resource body, or a reference with apiVersion, kind and metadata
        reason: CamelCase reason
        message: Human-readable message
        type_: Normal or Warning
    """
    kopf.event(body, reason=reason, message=sanitize_error_message(message), type=type_)


def emit_reconcile_started(body: dict[str, Any]) -> None:
    emit_event(body, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(body: dict[str, Any], message: str) -> None:
    emit_event(body, EVENT_REASON_RECONCILE_FAILED, message, type_=EVENT_TYPE_WARNING)
