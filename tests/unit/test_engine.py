"""Tests for the KubernetesService reconciliation engine."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fakes import RELEASE_IMAGES, RELEASE_PULL_SPEC, available_deployment_status, kubernetes_service

from hypershift_lite_operator.constants import (
    ANNOTATION_CA_CHECKSUM,
    API_GROUP_VERSION,
    COMPONENT_HYPERKUBE,
    COND_AVAILABLE,
    COND_ETCD_AVAILABLE,
    CONTROLLER_NAME,
    KIND_DEPLOYMENT,
    KIND_ETCD_CLUSTER,
    KIND_KUBERNETES_SERVICE,
    KIND_SECRET,
    LABEL_MANAGED_BY,
)
from hypershift_lite_operator.reconcile.engine import PassStage, ReconciliationEngine, ReconcileResult
from hypershift_lite_operator.services.pki.lifecycle import ca_checksum
from hypershift_lite_operator.utils.conditions import get_condition, is_condition_true
from hypershift_lite_operator.utils.errors import EtcdBootstrapFailedError, InvalidRootCAError, ReleaseLookupError
from hypershift_lite_operator.utils.secrets import get_secret_bytes, set_secret_bytes

NAMESPACE = "cp-1"
NAME = "cluster"

ETCD_AVAILABLE = {"conditions": [{"type": "Available", "status": "True"}]}

APISERVER_AND_CONTROLLER_MANAGER_OBJECTS = {
    "kube-apiserver",
    "kas-server-crt",
    "kas-aggregator-crt",
    "kas-sa-key",
    "kubeconfig",
    "localhost-kubeconfig",
    "kas-audit-config",
    "kas-config",
    "oauth-metadata",
    "cluster-signer",
    "kcm-config",
    "kube-controller-manager",
}


@pytest.fixture
def recorder() -> MagicMock:
    return MagicMock()


@pytest.fixture
def engine(store, release_provider, clock, recorder) -> ReconciliationEngine:
    return ReconciliationEngine(store, release_provider, now=clock, event_recorder=recorder)


@pytest.fixture
def kubesvc(store) -> dict:
    return store.put(kubernetes_service(NAMESPACE, NAME))


def _reasons(recorder: MagicMock) -> list[str]:
    return [call.args[1] for call in recorder.call_args_list]


def _conditions(store) -> list[dict]:
    return store.get(KIND_KUBERNETES_SERVICE, NAMESPACE, NAME)["status"]["conditions"]


def _converge(engine, store) -> ReconcileResult:
    """Drive a control plane to the point where every subsystem reports available."""
    engine.reconcile(NAMESPACE, NAME)
    store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)
    engine.reconcile(NAMESPACE, NAME)
    store.set_status(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver", available_deployment_status())
    engine.reconcile(NAMESPACE, NAME)
    store.set_status(KIND_DEPLOYMENT, NAMESPACE, "kube-controller-manager", available_deployment_status())
    return engine.reconcile(NAMESPACE, NAME)


class TestPassGating:
    """Test how far a pass gets depending on subsystem availability."""

    def test_first_pass_waits_for_etcd(self, engine, store, kubesvc, release_provider):
        """Test that a fresh control plane stops after creating the etcd subsystem."""
        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.NOT_STARTED, 10.0)
        assert store.get(KIND_SECRET, NAMESPACE, "root-ca") is not None
        for secret_name in ("etcd-client-tls", "etcd-server-tls", "etcd-peer-tls"):
            assert store.get(KIND_SECRET, NAMESPACE, secret_name) is not None
        assert store.get("ServiceAccount", NAMESPACE, "etcd-operator") is not None
        assert store.get("Role", NAMESPACE, "etcd-operator") is not None
        assert store.get("RoleBinding", NAMESPACE, "etcd-operator") is not None
        assert store.get(KIND_DEPLOYMENT, NAMESPACE, "etcd-operator") is not None
        assert store.get(KIND_ETCD_CLUSTER, NAMESPACE, "etcd") is not None
        assert store.get(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver") is None
        assert release_provider.lookups == []

    def test_unavailable_etcd_blocks_downstream_writes(self, engine, store, kubesvc, release_provider):
        """Test that no API server or controller manager object is written while etcd is unavailable."""
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", {"members": {"ready": []}})

        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.NOT_STARTED, 10.0)
        assert get_condition(_conditions(store), COND_ETCD_AVAILABLE)["reason"] == "ScalingUp"
        written = {name for _, _, name in store.writes()}
        assert written
        assert written.isdisjoint(APISERVER_AND_CONTROLLER_MANAGER_OBJECTS)
        assert release_provider.lookups == []

    def test_first_pass_conditions(self, engine, store, kubesvc):
        """Test that every subsystem condition and the rollup are recorded."""
        engine.reconcile(NAMESPACE, NAME)

        conditions = _conditions(store)
        assert [c["type"] for c in conditions] == [
            "EtcdAvailable",
            "KubeAPIServerAvailable",
            "KubeControllerManagerAvailable",
            "Available",
        ]
        assert get_condition(conditions, COND_ETCD_AVAILABLE)["reason"] == "EtcdClusterNotFound"
        assert get_condition(conditions, "KubeAPIServerAvailable")["reason"] == "DeploymentNotFound"
        assert get_condition(conditions, COND_AVAILABLE)["status"] == "False"

    def test_etcd_available_reconciles_apiserver(self, engine, store, kubesvc, release_provider):
        """Test that an available etcd unblocks the API server subsystem."""
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)

        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.ETCD_READY)
        assert release_provider.lookups == [(RELEASE_PULL_SPEC, "pull-secret", NAMESPACE)]
        for secret_name in ("kas-server-crt", "kas-aggregator-crt", "kas-sa-key", "kubeconfig", "localhost-kubeconfig"):
            assert store.get(KIND_SECRET, NAMESPACE, secret_name) is not None
        for cm_name in ("kas-audit-config", "kas-config", "oauth-metadata"):
            assert store.get("ConfigMap", NAMESPACE, cm_name) is not None
        assert store.get("Service", NAMESPACE, "kube-apiserver") is not None
        dep = store.get(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver")
        images = {c["name"]: c["image"] for c in dep["spec"]["template"]["spec"]["containers"]}
        assert images["kube-apiserver"] == RELEASE_IMAGES[COMPONENT_HYPERKUBE]
        assert store.get(KIND_DEPLOYMENT, NAMESPACE, "kube-controller-manager") is None

    def test_apiserver_available_reconciles_controller_manager(self, engine, store, kubesvc):
        """Test that an available API server unblocks the controller manager."""
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver", available_deployment_status())

        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.CONVERGED)
        assert store.get(KIND_SECRET, NAMESPACE, "cluster-signer") is not None
        assert store.get("ConfigMap", NAMESPACE, "kcm-config") is not None
        assert store.get(KIND_DEPLOYMENT, NAMESPACE, "kube-controller-manager") is not None

    def test_unavailable_controller_manager_keeps_rollup_false(self, engine, store, kubesvc):
        """Test that Available stays False while only the controller manager is down."""
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver", available_deployment_status())
        engine.reconcile(NAMESPACE, NAME)

        engine.reconcile(NAMESPACE, NAME)

        conditions = _conditions(store)
        assert get_condition(conditions, COND_ETCD_AVAILABLE)["status"] == "True"
        assert get_condition(conditions, "KubeAPIServerAvailable")["status"] == "True"
        kcm_condition = get_condition(conditions, "KubeControllerManagerAvailable")
        assert (kcm_condition["status"], kcm_condition["reason"]) == ("False", "KCMScalingUp")
        available = get_condition(conditions, COND_AVAILABLE)
        assert (available["status"], available["reason"]) == ("False", "NotAvailable")

    def test_all_available(self, engine, store, kubesvc, recorder):
        """Test that the rollup flips to Available once every subsystem is up."""
        result = _converge(engine, store)

        assert result.stage == PassStage.CONVERGED
        assert is_condition_true(_conditions(store), COND_AVAILABLE)
        assert _reasons(recorder).count("ControlPlaneAvailable") == 1

    def test_converged_pass_is_idempotent(self, engine, store, kubesvc, recorder):
        """Test that a pass over a converged control plane writes nothing."""
        _converge(engine, store)
        store.calls.clear()
        recorder.reset_mock()

        result = engine.reconcile(NAMESPACE, NAME)

        assert result.stage == PassStage.CONVERGED
        assert store.calls == []
        recorder.assert_not_called()

    def test_server_defaulted_fields_cause_no_writes(self, engine, store, kubesvc):
        """Test that fields filled in by the API server are not fought over."""
        _converge(engine, store)
        for name in ("etcd-operator", "kube-apiserver", "kube-controller-manager"):
            dep = store.get(KIND_DEPLOYMENT, NAMESPACE, name)
            dep["spec"]["revisionHistoryLimit"] = 10
            dep["spec"]["progressDeadlineSeconds"] = 600
            pod = dep["spec"]["template"]["spec"]
            pod["dnsPolicy"] = "ClusterFirst"
            for container in pod["containers"]:
                container["imagePullPolicy"] = "IfNotPresent"
            store.put(dep)
        store.calls.clear()

        engine.reconcile(NAMESPACE, NAME)

        assert store.writes() == []

    def test_release_resolved_on_each_pass_past_etcd(self, engine, store, kubesvc, release_provider):
        """Test that each pass past the etcd gate resolves the release image."""
        _converge(engine, store)

        assert all(lookup == (RELEASE_PULL_SPEC, "pull-secret", NAMESPACE) for lookup in release_provider.lookups)
        assert len(release_provider.lookups) == 3


class TestSkippedPasses:
    """Test passes that end before touching owned objects."""

    def test_missing_kubernetes_service(self, engine, store):
        """Test that a missing KubernetesService is a no-op."""
        result = engine.reconcile(NAMESPACE, "missing")

        assert result == ReconcileResult(PassStage.NOT_STARTED)
        assert store.calls == []

    def test_deleting_kubernetes_service(self, engine, store):
        """Test that a KubernetesService being deleted is left alone."""
        body = kubernetes_service(NAMESPACE, NAME)
        body["metadata"]["deletionTimestamp"] = "2024-01-01T12:00:00Z"
        store.put(body)

        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.NOT_STARTED)
        assert store.calls == []

    def test_workload_being_deleted(self, engine, store, kubesvc):
        """Test that a workload being deleted requeues the pass shortly."""
        store.put({
            "apiVersion": "etcd.database.coreos.com/v1beta2",
            "kind": KIND_ETCD_CLUSTER,
            "metadata": {"name": "etcd", "namespace": NAMESPACE, "deletionTimestamp": "2024-01-01T12:00:00Z"},
        })

        result = engine.reconcile(NAMESPACE, NAME)

        assert result == ReconcileResult(PassStage.NOT_STARTED, 5.0)
        assert store.calls == []


class TestEtcdRecovery:
    """Test recreation of an etcd cluster that failed to bootstrap."""

    def test_bootstrap_timeout_recreates_cluster(self, engine, store, kubesvc, clock, recorder):
        """Test that a cluster without ready members after the timeout is deleted."""
        engine.reconcile(NAMESPACE, NAME)
        clock.advance(minutes=6)

        with pytest.raises(EtcdBootstrapFailedError):
            engine.reconcile(NAMESPACE, NAME)

        assert store.get(KIND_ETCD_CLUSTER, NAMESPACE, "etcd") is None
        assert ("delete", KIND_ETCD_CLUSTER, "etcd") in store.calls
        cond = get_condition(_conditions(store), COND_ETCD_AVAILABLE)
        assert cond["status"] == "False"
        assert cond["reason"] == "EtcdFailed"
        assert "EtcdClusterRecreated" in _reasons(recorder)

    def test_next_pass_recreates_cluster(self, engine, store, kubesvc, clock):
        """Test that the pass after a failure creates a new cluster."""
        engine.reconcile(NAMESPACE, NAME)
        clock.advance(minutes=6)
        with pytest.raises(EtcdBootstrapFailedError):
            engine.reconcile(NAMESPACE, NAME)

        result = engine.reconcile(NAMESPACE, NAME)

        assert result.stage == PassStage.NOT_STARTED
        assert store.get(KIND_ETCD_CLUSTER, NAMESPACE, "etcd") is not None

    def test_within_timeout_keeps_cluster(self, engine, store, kubesvc, clock):
        """Test that a young cluster is left to bootstrap."""
        engine.reconcile(NAMESPACE, NAME)
        clock.advance(minutes=4)

        result = engine.reconcile(NAMESPACE, NAME)

        assert result.requeue_after == 10.0
        assert ("delete", KIND_ETCD_CLUSTER, "etcd") not in store.calls


class TestCertificates:
    """Test the certificate lifecycle as driven by the engine."""

    def test_issued_events(self, engine, store, kubesvc, recorder):
        """Test that newly issued secrets are announced."""
        engine.reconcile(NAMESPACE, NAME)

        messages = [call.args[2] for call in recorder.call_args_list if call.args[1] == "CertificateIssued"]
        assert messages == [
            "Issued key material for secret root-ca",
            "Issued key material for secret etcd-client-tls",
            "Issued key material for secret etcd-server-tls",
            "Issued key material for secret etcd-peer-tls",
        ]

    def test_secret_types_match_data_keys(self, engine, store, kubesvc):
        """Test that only secrets holding exactly tls.crt and tls.key are typed kubernetes.io/tls."""
        _converge(engine, store)

        secrets = store.list(KIND_SECRET, NAMESPACE)
        tls_secrets = {s["metadata"]["name"]: sorted(s["data"]) for s in secrets if s["type"] == "kubernetes.io/tls"}
        assert tls_secrets == {
            "kas-server-crt": ["tls.crt", "tls.key"],
            "kas-aggregator-crt": ["tls.crt", "tls.key"],
        }
        for secret_name in ("etcd-client-tls", "etcd-server-tls", "etcd-peer-tls", "cluster-signer"):
            assert store.get(KIND_SECRET, NAMESPACE, secret_name)["type"] == "Opaque"

    def test_invalid_root_ca_fails_pass(self, engine, store, kubesvc):
        """Test that an unusable root CA is reported, not regenerated."""
        secret = {"apiVersion": "v1", "kind": KIND_SECRET, "metadata": {"name": "root-ca", "namespace": NAMESPACE}}
        set_secret_bytes(secret, "ca.crt", b"garbage")
        set_secret_bytes(secret, "ca.key", b"garbage")
        store.put(secret)

        with pytest.raises(InvalidRootCAError):
            engine.reconcile(NAMESPACE, NAME)

        assert get_secret_bytes(store.get(KIND_SECRET, NAMESPACE, "root-ca"), "ca.crt") == b"garbage"
        assert store.get(KIND_SECRET, NAMESPACE, "etcd-client-tls") is None

    def test_replaced_root_ca_reissues_leaves(self, engine, store, kubesvc):
        """Test that leaf secrets follow a new root CA."""
        engine.reconcile(NAMESPACE, NAME)
        old_cert = store.get(KIND_SECRET, NAMESPACE, "etcd-client-tls")["data"]["etcd-client.crt"]
        store.delete(KIND_SECRET, NAMESPACE, "root-ca")

        engine.reconcile(NAMESPACE, NAME)

        root_ca = store.get(KIND_SECRET, NAMESPACE, "root-ca")
        client = store.get(KIND_SECRET, NAMESPACE, "etcd-client-tls")
        assert client["data"]["etcd-client.crt"] != old_cert
        assert client["metadata"]["annotations"][ANNOTATION_CA_CHECKSUM] == ca_checksum(
            get_secret_bytes(root_ca, "ca.crt")
        )
        assert get_secret_bytes(client, "etcd-client-ca.crt") == get_secret_bytes(root_ca, "ca.crt")


class TestOwnedObjects:
    """Test ownership stamping on created objects."""

    def test_owner_reference_and_label(self, engine, store, kubesvc):
        """Test that created objects point back at their KubernetesService."""
        engine.reconcile(NAMESPACE, NAME)

        for kind, name in ((KIND_DEPLOYMENT, "etcd-operator"), (KIND_ETCD_CLUSTER, "etcd"), (KIND_SECRET, "root-ca")):
            meta = store.get(kind, NAMESPACE, name)["metadata"]
            assert meta["ownerReferences"] == [{
                "apiVersion": API_GROUP_VERSION,
                "kind": KIND_KUBERNETES_SERVICE,
                "name": NAME,
                "uid": f"uid-{NAME}",
                "blockOwnerDeletion": True,
            }]
            assert meta["labels"][LABEL_MANAGED_BY] == CONTROLLER_NAME

    def test_drifted_object_restored(self, engine, store, kubesvc):
        """Test that an edited object is brought back to its desired state."""
        engine.reconcile(NAMESPACE, NAME)
        cluster = store.get(KIND_ETCD_CLUSTER, NAMESPACE, "etcd")
        cluster["spec"]["size"] = 5
        store.put(cluster)
        store.calls.clear()

        engine.reconcile(NAMESPACE, NAME)

        assert store.get(KIND_ETCD_CLUSTER, NAMESPACE, "etcd")["spec"]["size"] == 1
        assert ("replace", KIND_ETCD_CLUSTER, "etcd") in store.calls


class TestReleaseLookup:
    """Test release image resolution during a pass."""

    def test_missing_release_image(self, engine, store):
        """Test that a KubernetesService without releaseImage fails past the etcd gate."""
        body = kubernetes_service(NAMESPACE, NAME)
        del body["spec"]["releaseImage"]
        store.put(body)
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)

        with pytest.raises(ReleaseLookupError, match="releaseImage"):
            engine.reconcile(NAMESPACE, NAME)

    def test_lookup_failure_propagates(self, store, kubesvc, clock):
        """Test that a failing release lookup fails the pass before API server objects are written."""
        provider = MagicMock()
        provider.lookup.side_effect = ReleaseLookupError("pod failed")
        engine = ReconciliationEngine(store, provider, now=clock)
        engine.reconcile(NAMESPACE, NAME)
        store.set_status(KIND_ETCD_CLUSTER, NAMESPACE, "etcd", ETCD_AVAILABLE)

        with pytest.raises(ReleaseLookupError):
            engine.reconcile(NAMESPACE, NAME)

        assert store.get(KIND_DEPLOYMENT, NAMESPACE, "kube-apiserver") is None
