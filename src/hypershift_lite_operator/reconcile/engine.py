"""Dependency-ordered convergence pass for a KubernetesService."""

from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .. import metrics
from ..builders import etcd, kas, kcm, manifests
from ..constants import (
    COMPONENT_CLI,
    COMPONENT_CLUSTER_CONFIG_OPERATOR,
    COMPONENT_HYPERKUBE,
    COND_AVAILABLE,
    COND_ETCD_AVAILABLE,
    COND_KAS_AVAILABLE,
    CONTROLLER_NAME,
    DEFAULT_POD_CIDR,
    DEFAULT_SERVICE_CIDR,
    ETCD_CLUSTER_REPLICAS,
    ETCD_OPERATOR_IMAGE,
    ETCD_VERSION,
    EVENT_REASON_CERTIFICATE_ISSUED,
    EVENT_REASON_CONTROL_PLANE_AVAILABLE,
    EVENT_REASON_ETCD_RECREATED,
    KIND_KUBERNETES_SERVICE,
    KUBE_APISERVER_PORT,
    KUBE_APISERVER_REPLICAS,
    KUBE_CONTROLLER_MANAGER_REPLICAS,
    LABEL_MANAGED_BY,
    REQUEUE_ETCD_NOT_AVAILABLE,
    REQUEUE_WORKLOAD_DELETING,
)
from ..logging import log_resource_event
from ..services.pki import lifecycle
from ..services.release.base import ReleaseImage, ReleaseImageProvider
from ..services.store.base import OperationResult, ResourceStore, create_or_update
from ..tracing import add_span_attribute, trace_span
from ..utils.conditions import is_condition_true, rollup_available, set_condition
from ..utils.errors import EtcdBootstrapFailedError, ReleaseLookupError
from ..utils.ownership import ensure_owner_ref, owner_reference
from .status import SubsystemStatusPolicy, default_policies

logger = logging.getLogger(__name__)

# Called as recorder(body, reason, message, type_)
EventRecorder = Callable[[dict[str, Any], str, str, str], None]


class PassStage(str, enum.Enum):
    """How far a pass got. Stages only move forward within a pass."""

    NOT_STARTED = "NotStarted"
    ETCD_READY = "EtcdReady"
    APISERVER_READY = "APIServerReady"
    CONVERGED = "Converged"
    FAILED = "Failed"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful pass.

    ``requeue_after`` is the delay in seconds before the next pass should run,
    or None when only a watch event should trigger it.
    """

    stage: PassStage
    requeue_after: float | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Drives one KubernetesService through etcd, API server and controller manager bring-up.

    Each call to :meth:`reconcile` is one pass: it refreshes the status of every
    subsystem, rolls it up into the Available condition, and then converges
    the owned objects subsystem by subsystem, stopping at the first subsystem
    that is not yet available. Waiting is expressed through the returned
    requeue delay, never by blocking.
    """

    def __init__(
        self,
        store: ResourceStore,
        release_provider: ReleaseImageProvider,
        now: Callable[[], datetime] = _utc_now,
        event_recorder: EventRecorder | None = None,
        status_policies: list[SubsystemStatusPolicy] | None = None,
    ):
        self.store = store
        self.release_provider = release_provider
        self.now = now
        self.event_recorder = event_recorder
        self.status_policies = status_policies if status_policies is not None else default_policies()

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one convergence pass.

        Raises:
            ReconcileError: If the pass failed and should be retried with backoff
        """
        with trace_span("reconcile_kubernetes_service", kind=KIND_KUBERNETES_SERVICE, attributes={
            "resource.name": name,
            "resource.namespace": namespace,
        }):
            try:
                result = self._reconcile(namespace, name)
            except Exception:
                metrics.pass_stage_total.labels(stage=PassStage.FAILED.value).inc()
                raise
            add_span_attribute("reconcile.stage", result.stage.value)
        metrics.pass_stage_total.labels(stage=result.stage.value).inc()
        return result

    def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        kubesvc = self.store.get(KIND_KUBERNETES_SERVICE, namespace, name)
        if kubesvc is None:
            logger.info(f"KubernetesService {namespace}/{name} not found, nothing to do")
            return ReconcileResult(PassStage.NOT_STARTED)
        if kubesvc.get("metadata", {}).get("deletionTimestamp"):
            self._log(kubesvc, "skip", "Deleting", "KubernetesService is being deleted")
            return ReconcileResult(PassStage.NOT_STARTED)

        self._log(kubesvc, "reconcile", "Started", "Reconciling KubernetesService")

        kubesvc, deleting = self._refresh_status(kubesvc)
        if deleting:
            return ReconcileResult(PassStage.NOT_STARTED, REQUEUE_WORKLOAD_DELETING)

        kubesvc = self._rollup(kubesvc)

        with trace_span("reconcile_root_ca"):
            root_ca = self._upsert_artifact(kubesvc, manifests.root_ca_secret(namespace), lifecycle.reconcile_root_ca)

        with trace_span("reconcile_etcd"):
            self._reconcile_etcd(kubesvc, root_ca)
        if not self._gate(kubesvc, "etcd", COND_ETCD_AVAILABLE):
            return ReconcileResult(PassStage.NOT_STARTED, REQUEUE_ETCD_NOT_AVAILABLE)

        release = self._release_image(kubesvc)

        with trace_span("reconcile_kube_apiserver"):
            self._reconcile_kube_apiserver(kubesvc, root_ca, release)
        if not self._gate(kubesvc, "kube-apiserver", COND_KAS_AVAILABLE):
            return ReconcileResult(PassStage.ETCD_READY)

        with trace_span("reconcile_kube_controller_manager"):
            self._reconcile_kube_controller_manager(kubesvc, root_ca, release)

        self._log(kubesvc, "reconcile", "Completed", "Reconciliation completed")
        return ReconcileResult(PassStage.CONVERGED)

    # Status

    def _refresh_status(self, kubesvc: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """Derive every subsystem condition from its workload and persist them.

        Returns:
            The (possibly re-read) KubernetesService, and whether a workload is
            being deleted so the pass must wait for it to go away
        """
        namespace = kubesvc["metadata"]["namespace"]
        status = kubesvc.setdefault("status", {})
        before = copy.deepcopy(status.get("conditions") or [])
        conditions = status.setdefault("conditions", [])

        for policy in self.status_policies:
            workload = policy.fetch(self.store, namespace)
            if workload is not None and workload.get("metadata", {}).get("deletionTimestamp"):
                self._log(
                    kubesvc, "wait", "WorkloadDeleting",
                    f"{policy.workload_kind} {policy.workload_name()} is being deleted",
                )
                return kubesvc, True

            derived = policy.evaluate(workload, self.store, self.now())
            set_condition(conditions, derived.condition_type, derived.status, derived.reason, derived.message, now=self.now)

            if derived.recreate:
                kubesvc = self._persist_status(kubesvc, before)
                self.store.delete(policy.workload_kind, namespace, policy.workload_name())
                metrics.subsystem_recreated_total.labels(subsystem=policy.subsystem, reason=derived.reason).inc()
                self._log(kubesvc, "recreate", derived.reason, derived.message, level=logging.WARNING)
                self._record(kubesvc, EVENT_REASON_ETCD_RECREATED, derived.message, "Warning")
                raise EtcdBootstrapFailedError("etcd cluster in error state, must recreate")

        return self._persist_status(kubesvc, before), False

    def _rollup(self, kubesvc: dict[str, Any]) -> dict[str, Any]:
        conditions = kubesvc["status"]["conditions"]
        before = copy.deepcopy(conditions)
        was_available = is_condition_true(conditions, COND_AVAILABLE)
        available = rollup_available(conditions, now=self.now)
        kubesvc = self._persist_status(kubesvc, before)
        if available and not was_available:
            self._record(kubesvc, EVENT_REASON_CONTROL_PLANE_AVAILABLE, "Kubernetes service is up and running", "Normal")
        return kubesvc

    def _persist_status(self, kubesvc: dict[str, Any], before: list[dict[str, Any]]) -> dict[str, Any]:
        """Write the status subresource if the conditions changed since ``before``."""
        conditions = kubesvc.get("status", {}).get("conditions") or []
        if conditions == before:
            return kubesvc
        updated = self.store.update_status(kubesvc)
        self._log(kubesvc, "status", "Updated", "Updated KubernetesService status")
        return updated

    def _gate(self, kubesvc: dict[str, Any], subsystem: str, condition_type: str) -> bool:
        passed = is_condition_true(kubesvc["status"]["conditions"], condition_type)
        metrics.gate_total.labels(subsystem=subsystem, result="passed" if passed else "blocked").inc()
        if not passed:
            self._log(kubesvc, "gate", "NotAvailable", f"{subsystem} is not yet available")
        return passed

    # Owned objects

    def _upsert(
        self,
        kubesvc: dict[str, Any],
        obj: dict[str, Any],
        mutate: Callable[..., None],
        *args: Any,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Create or update an owned object, stamping ownership before ``mutate`` runs."""
        ref = owner_reference(kubesvc)

        def apply(desired: dict[str, Any]) -> None:
            ensure_owner_ref(desired, ref)
            desired["metadata"].setdefault("labels", {})[LABEL_MANAGED_BY] = CONTROLLER_NAME
            mutate(desired, *args, **kwargs)

        result, operation = create_or_update(self.store, obj, apply)
        metrics.object_operations_total.labels(kind=obj["kind"], operation=operation.value).inc()
        if operation != OperationResult.UNCHANGED:
            meta = obj["metadata"]
            self._log(kubesvc, "upsert", operation.value.capitalize(), f"{obj['kind']} {meta['name']} {operation.value}")
        return result

    def _upsert_artifact(
        self,
        kubesvc: dict[str, Any],
        obj: dict[str, Any],
        mutate: Callable[..., None],
        *args: Any,
    ) -> dict[str, Any]:
        """Upsert a secret managed by the certificate lifecycle.

        Newly issued key material is announced only after the write succeeded.
        """
        issued: list[str] = []
        result = self._upsert(kubesvc, obj, mutate, *args, on_issued=issued.append)
        for secret_name in issued:
            self._record(kubesvc, EVENT_REASON_CERTIFICATE_ISSUED, f"Issued key material for secret {secret_name}", "Normal")
        return result

    def _reconcile_etcd(self, kubesvc: dict[str, Any], root_ca: dict[str, Any]) -> None:
        namespace = kubesvc["metadata"]["namespace"]
        self._upsert_artifact(
            kubesvc, etcd.client_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, etcd.client_cert_config(), etcd.CLIENT_KEYS,
        )
        self._upsert_artifact(
            kubesvc, etcd.server_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, etcd.server_cert_config(namespace), etcd.SERVER_KEYS,
        )
        self._upsert_artifact(
            kubesvc, etcd.peer_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, etcd.peer_cert_config(namespace), etcd.PEER_KEYS,
        )
        self._upsert(kubesvc, etcd.operator_service_account(namespace), _no_changes)
        self._upsert(kubesvc, etcd.operator_role(namespace), etcd.reconcile_operator_role)
        self._upsert(kubesvc, etcd.operator_role_binding(namespace), etcd.reconcile_operator_role_binding)
        self._upsert(
            kubesvc, etcd.operator_deployment(namespace), etcd.reconcile_operator_deployment, ETCD_OPERATOR_IMAGE,
        )
        self._upsert(kubesvc, etcd.cluster(namespace), etcd.reconcile_cluster, ETCD_CLUSTER_REPLICAS, ETCD_VERSION)

    def _release_image(self, kubesvc: dict[str, Any]) -> ReleaseImage:
        spec = kubesvc.get("spec") or {}
        pull_spec = spec.get("releaseImage")
        if not pull_spec:
            raise ReleaseLookupError("spec.releaseImage is required")
        pull_secret_name = (spec.get("pullSecret") or {}).get("name")
        with trace_span("lookup_release_image", attributes={"release.image": pull_spec}):
            return self.release_provider.lookup(pull_spec, pull_secret_name, kubesvc["metadata"]["namespace"])

    def _reconcile_kube_apiserver(self, kubesvc: dict[str, Any], root_ca: dict[str, Any], release: ReleaseImage) -> None:
        namespace = kubesvc["metadata"]["namespace"]
        self._upsert(kubesvc, kas.service(namespace), kas.reconcile_service, KUBE_APISERVER_PORT, KUBE_APISERVER_PORT)
        self._upsert_artifact(
            kubesvc, kas.server_cert_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, kas.server_cert_config(namespace, DEFAULT_SERVICE_CIDR),
        )
        self._upsert_artifact(
            kubesvc, kas.aggregator_cert_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, kas.aggregator_cert_config(),
        )
        self._upsert_artifact(
            kubesvc, kas.service_account_key_secret(namespace), lifecycle.reconcile_keypair_secret,
            kas.SERVICE_SIGNER_PRIVATE_KEY, kas.SERVICE_SIGNER_PUBLIC_KEY,
        )
        self._upsert_artifact(
            kubesvc, kas.service_kubeconfig_secret(namespace), lifecycle.reconcile_kubeconfig_secret,
            root_ca, kas.service_url(KUBE_APISERVER_PORT),
        )
        self._upsert_artifact(
            kubesvc, kas.localhost_kubeconfig_secret(namespace), lifecycle.reconcile_kubeconfig_secret,
            root_ca, kas.localhost_url(KUBE_APISERVER_PORT),
        )
        self._upsert(kubesvc, kas.audit_config(namespace), kas.reconcile_audit_config)
        self._upsert(kubesvc, kas.config(namespace), kas.reconcile_config, DEFAULT_SERVICE_CIDR, KUBE_APISERVER_PORT)
        self._upsert(kubesvc, kas.oauth_metadata(namespace), kas.reconcile_oauth_metadata)
        self._upsert(
            kubesvc, kas.deployment(namespace), kas.reconcile_deployment,
            release.image(COMPONENT_CLUSTER_CONFIG_OPERATOR),
            release.image(COMPONENT_CLI),
            release.image(COMPONENT_HYPERKUBE),
            KUBE_APISERVER_PORT,
            KUBE_APISERVER_REPLICAS,
        )

    def _reconcile_kube_controller_manager(
        self,
        kubesvc: dict[str, Any],
        root_ca: dict[str, Any],
        release: ReleaseImage,
    ) -> None:
        namespace = kubesvc["metadata"]["namespace"]
        self._upsert_artifact(
            kubesvc, kcm.cluster_signer_secret(namespace), lifecycle.reconcile_signed_secret,
            root_ca, kcm.cluster_signer_config(), kcm.CLUSTER_SIGNER_KEYS,
        )
        self._upsert(kubesvc, kcm.config(namespace), kcm.reconcile_config)
        self._upsert(
            kubesvc, kcm.deployment(namespace), kcm.reconcile_deployment,
            DEFAULT_POD_CIDR, DEFAULT_SERVICE_CIDR, release.image(COMPONENT_HYPERKUBE), KUBE_CONTROLLER_MANAGER_REPLICAS,
        )

    # Observability

    def _log(
        self,
        kubesvc: dict[str, Any],
        event: str,
        reason: str,
        message: str,
        level: int = logging.INFO,
    ) -> None:
        meta = kubesvc.get("metadata", {})
        log_resource_event(
            logger,
            controller=CONTROLLER_NAME,
            resource_kind=KIND_KUBERNETES_SERVICE,
            resource_name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            uid=meta.get("uid", ""),
            event=event,
            reason=reason,
            message=message,
            level=level,
        )

    def _record(self, kubesvc: dict[str, Any], reason: str, message: str, type_: str) -> None:
        if self.event_recorder is not None:
            self.event_recorder(kubesvc, reason, message, type_)


def _no_changes(obj: dict[str, Any]) -> None:
    """Mutate callback for objects whose only desired state is ownership."""
