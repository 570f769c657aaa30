"""Shared plumbing for handlers: structured logs, events, metrics and retry delays."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, TypeVar

from .. import metrics
from ..constants import CONTROLLER_NAME, ERROR_BACKOFF_MAX, ERROR_BACKOFF_MIN
from ..logging import log_resource_event
from ..utils.errors import sanitize_exception
from ..utils.events import emit_reconcile_failed, emit_reconcile_started

_T = TypeVar("_T")


def error_backoff(retry: int) -> float:
    """Delay before retrying a failed pass: 1s doubling per retry, capped at 10s."""
    return min(ERROR_BACKOFF_MIN * 2 ** max(retry, 0), ERROR_BACKOFF_MAX)


class BaseHandler:
    """Common behavior of the handlers for one watched kind."""

    def __init__(self, kind: str):
        self.kind = kind
        self.logger = logging.getLogger(__name__)

    def _get_resource_context(self, meta: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": meta.get("name", "unknown"),
            "namespace": meta.get("namespace", "default"),
            "uid": meta.get("uid", "unknown"),
        }

    def _log(self, meta: dict[str, Any], message: str, event: str, reason: str, level: int, **kwargs: Any) -> None:
        ctx = self._get_resource_context(meta)
        log_resource_event(
            self.logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=ctx["name"],
            namespace=ctx["namespace"],
            uid=ctx["uid"],
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(
        self,
        meta: dict[str, Any],
        message: str,
        event: str = "info",
        reason: str = "Info",
        **kwargs: Any,
    ) -> None:
        """Log a resource event at INFO level.

        Args:
            meta: Metadata of the resource the line is about
            message: Human-readable message
            event: Short machine-readable event name
            reason: CamelCase reason
            **kwargs: Extra fields, sanitized before logging
        """
        self._log(meta, message, event, reason, logging.INFO, **kwargs)

    def log_error(
        self,
        meta: dict[str, Any],
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log a resource event at ERROR level, with the sanitized error and its type."""
        fields = dict(kwargs)
        if error is not None:
            fields["error"] = sanitize_exception(error)
            fields["error_type"] = type(error).__name__
        self._log(meta, message, event, reason, logging.ERROR, **fields)

    def reconcile_with_metrics(self, body: dict[str, Any], reconcile_fn: Callable[[], _T]) -> _T:
        """Run ``reconcile_fn`` wrapped in ReconcileStarted/Failed events and metrics.

        Failures are logged, counted by exception type and re-raised.

        Args:
            body: Resource the events are attached to
            reconcile_fn: The pass to run

        Returns:
            Whatever ``reconcile_fn`` returns
        """
        meta = body.get("metadata", {})
        emit_reconcile_started(body)
        metrics.reconcile_total.labels(kind=self.kind, result="started").inc()

        start_time = time.time()
        try:
            result = reconcile_fn()
        except Exception as e:
            metrics.error_total.labels(kind=self.kind, error_type=type(e).__name__).inc()
            metrics.reconcile_total.labels(kind=self.kind, result="error").inc()
            self.log_error(meta, "Reconciliation failed", error=e, event="reconcile", reason="ReconciliationFailed")
            emit_reconcile_failed(body, f"Reconciliation failed: {sanitize_exception(e)}")
            raise
        finally:
            metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(time.time() - start_time)

        metrics.reconcile_total.labels(kind=self.kind, result="success").inc()
        return result
