"""Utility functions for the HyperShift Lite Operator."""

from .conditions import get_condition, is_condition_true, rollup_available, set_condition
from .context import (
    get_context_dict,
    get_correlation_id,
    with_correlation_id,
)
from .events import emit_event
from .ownership import ensure_owner_ref, find_owner, owner_reference
from .rate_limit import handle_rate_limit_error, rate_limit_k8s
from .secrets import get_secret_bytes, has_exact_keys, set_secret_bytes

__all__ = [
    "get_condition",
    "is_condition_true",
    "set_condition",
    "rollup_available",
    "emit_event",
    "owner_reference",
    "ensure_owner_ref",
    "find_owner",
    "get_secret_bytes",
    "set_secret_bytes",
    "has_exact_keys",
    "rate_limit_k8s",
    "handle_rate_limit_error",
    "get_correlation_id",
    "with_correlation_id",
    "get_context_dict",
]
