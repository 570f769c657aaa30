"""Utilities for managing KubernetesService status conditions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from ..constants import (
    COND_AVAILABLE,
    REASON_NOT_AVAILABLE,
    REASON_RUNNING,
    STATUS_FALSE,
    STATUS_TRUE,
    SUBSYSTEM_CONDITIONS,
)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime the way Kubernetes serializes metav1.Time."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse a Kubernetes RFC 3339 timestamp into an aware datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
) -> dict[str, Any] | None:
    """Return the condition of the given type, or None."""
    for cond in conditions:
        if cond.get("type") == condition_type:
            return cond
    return None


def is_condition_true(conditions: list[dict[str, Any]], condition_type: str) -> bool:
    """Check whether a condition is present and has status True."""
    cond = get_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == STATUS_TRUE


def set_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: Callable[[], datetime] = _utc_now,
) -> list[dict[str, Any]]:
    """Update or add a condition in place.

    The first write for a type fixes its position in the list. The
    lastTransitionTime is only touched when the status value changes; reason
    and message edits alone leave it untouched.

    Args:
        conditions: List of existing conditions, modified in place
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: CamelCase reason for the condition
        message: Human-readable message
        now: Clock used for lastTransitionTime

    Returns:
        The same list, for chaining
    """
    existing = get_condition(conditions, condition_type)
    if existing is None:
        conditions.append({
            "type": condition_type,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": format_timestamp(now()),
        })
        return conditions

    if existing.get("status") != status:
        existing["lastTransitionTime"] = format_timestamp(now())
    existing["status"] = status
    existing["reason"] = reason
    existing["message"] = message
    return conditions


def rollup_available(
    conditions: list[dict[str, Any]],
    now: Callable[[], datetime] = _utc_now,
) -> bool:
    """Derive the top-level Available condition from the subsystem conditions.

    Returns:
        True if every subsystem condition is present and True
    """
    available = all(is_condition_true(conditions, t) for t in SUBSYSTEM_CONDITIONS)
    if available:
        set_condition(
            conditions,
            COND_AVAILABLE,
            STATUS_TRUE,
            REASON_RUNNING,
            "Kubernetes service is up and running",
            now=now,
        )
    else:
        set_condition(
            conditions,
            COND_AVAILABLE,
            STATUS_FALSE,
            REASON_NOT_AVAILABLE,
            "Kubernetes service is not yet available",
            now=now,
        )
    return available
