"""Handlers for KubernetesService resources and the workloads they own."""

from __future__ import annotations

import os
import threading
import weakref
from typing import Any, Callable

import kopf

from ..constants import (
    API_GROUP_VERSION,
    CONTROLLER_NAME,
    ETCD_API_GROUP,
    ETCD_API_VERSION,
    KIND_KUBERNETES_SERVICE,
    LABEL_MANAGED_BY,
    PLURAL_ETCD_CLUSTER,
)
from ..reconcile.engine import ReconcileResult, ReconciliationEngine
from ..services.release.cache import CachedReleaseImageProvider
from ..services.release.pod import PodReleaseImageProvider
from ..services.store.kubernetes import KubernetesResourceStore
from ..utils.context import with_correlation_id
from ..utils.errors import sanitize_exception
from ..utils.events import emit_event
from ..utils.ownership import find_owner
from .base import BaseHandler, error_backoff

RESYNC_INTERVAL_SECONDS = float(os.getenv("RESYNC_INTERVAL_SECONDS", "300"))


def build_engine() -> ReconciliationEngine:
    """Build the engine used by the operator process.

    The Kubernetes client configuration must already be loaded.
    """
    store = KubernetesResourceStore()
    release_provider = CachedReleaseImageProvider(PodReleaseImageProvider())
    return ReconciliationEngine(store, release_provider, event_recorder=emit_event)


class KubernetesServiceHandler(BaseHandler):
    """Runs convergence passes for KubernetesService resources.

    Passes for the same resource are serialized by a per-key lock; passes for
    different resources run concurrently on kopf's worker threads.
    """

    def __init__(
        self,
        engine: ReconciliationEngine | None = None,
        engine_factory: Callable[[], ReconciliationEngine] = build_engine,
    ):
        """Initialize the handler.

        Args:
            engine: Engine to use; built with ``engine_factory`` on first use
                when omitted
            engine_factory: Builds the engine lazily
        """
        super().__init__(KIND_KUBERNETES_SERVICE)
        self._engine = engine
        self._engine_factory = engine_factory
        # An entry lives only as long as a pass holds its lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], threading.Lock] = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    @property
    def engine(self) -> ReconciliationEngine:
        with self._guard:
            if self._engine is None:
                self._engine = self._engine_factory()
            return self._engine

    def key_lock(self, namespace: str, name: str) -> threading.Lock:
        """Return the lock serializing passes for one KubernetesService."""
        with self._guard:
            lock = self._locks.get((namespace, name))
            if lock is None:
                lock = self._locks[(namespace, name)] = threading.Lock()
            return lock

    def run_pass(self, body: dict[str, Any]) -> ReconcileResult:
        """Run one pass for the KubernetesService described by ``body``."""
        meta = body.get("metadata", {})
        namespace, name = meta.get("namespace", ""), meta.get("name", "")
        engine = self.engine
        with with_correlation_id(), self.key_lock(namespace, name):
            return self.reconcile_with_metrics(body, lambda: engine.reconcile(namespace, name))

    def reconcile(self, body: dict[str, Any], retry: int = 0) -> None:
        """Run a pass and translate its outcome into kopf's retry protocol.

        Raises:
            kopf.TemporaryError: When the pass asked for a requeue, or failed
                and must be retried with backoff
        """
        meta = body.get("metadata", {})
        try:
            result = self.run_pass(body)
        except Exception as e:
            delay = error_backoff(retry)
            raise kopf.TemporaryError(f"Reconciliation failed: {sanitize_exception(e)}", delay=delay) from e

        if result.requeue_after is not None:
            self.log_info(
                meta,
                f"Pass stopped at stage {result.stage.value}, requeue in {result.requeue_after}s",
                event="requeue",
                reason=result.stage.value,
            )
            raise kopf.TemporaryError(f"Waiting at stage {result.stage.value}", delay=result.requeue_after)

        self.log_info(meta, f"Pass finished at stage {result.stage.value}", event="pass", reason=result.stage.value)

    def reconcile_owner(self, body: dict[str, Any]) -> ReconcileResult | None:
        """Run a pass for the KubernetesService owning a changed workload.

        Returns:
            The pass result, or None if the object has no KubernetesService owner
        """
        owner = find_owner(body)
        if owner is None:
            return None
        owner_body = {
            "apiVersion": owner.get("apiVersion", API_GROUP_VERSION),
            "kind": owner.get("kind", KIND_KUBERNETES_SERVICE),
            "metadata": {
                "name": owner.get("name"),
                "namespace": body.get("metadata", {}).get("namespace"),
                "uid": owner.get("uid"),
            },
        }
        return self.run_pass(owner_body)


# Global handler instance
_handler = KubernetesServiceHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_KUBERNETES_SERVICE)
@kopf.on.update(API_GROUP_VERSION, KIND_KUBERNETES_SERVICE)
@kopf.on.resume(API_GROUP_VERSION, KIND_KUBERNETES_SERVICE)
@kopf.timer(API_GROUP_VERSION, KIND_KUBERNETES_SERVICE, interval=RESYNC_INTERVAL_SECONDS)
def handle_kubernetes_service(
    body: kopf.Body,
    retry: int,
    **kwargs: Any,
) -> None:
    """Handle KubernetesService resource reconciliation."""
    _handler.reconcile(body, retry)


@kopf.on.event("apps/v1", "deployments", labels={LABEL_MANAGED_BY: CONTROLLER_NAME})
@kopf.on.event(f"{ETCD_API_GROUP}/{ETCD_API_VERSION}", PLURAL_ETCD_CLUSTER, labels={LABEL_MANAGED_BY: CONTROLLER_NAME})
def handle_owned_workload(
    body: kopf.Body,
    **kwargs: Any,
) -> None:
    """Re-run the owner's pass when an owned Deployment or EtcdCluster changes."""
    _handler.reconcile_owner(body)
