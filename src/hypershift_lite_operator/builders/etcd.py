"""Desired state of the etcd subsystem: TLS secrets, the etcd operator and the cluster."""

from __future__ import annotations

from typing import Any

from ..constants import (
    ETCD_API_GROUP,
    ETCD_CLIENT_PORT,
    ETCD_CLUSTER_NAME,
)
from ..services.pki.certs import EXT_KEY_USAGE_CLIENT_AUTH, EXT_KEY_USAGE_SERVER_AUTH, CertConfig
from ..services.pki.lifecycle import SignedSecretKeys
from . import manifests

OPERATOR_NAME = "etcd-operator"

CLIENT_SECRET_NAME = "etcd-client-tls"
SERVER_SECRET_NAME = "etcd-server-tls"
PEER_SECRET_NAME = "etcd-peer-tls"

# Key names the etcd operator expects in static TLS secrets
CLIENT_KEYS = SignedSecretKeys(cert="etcd-client.crt", key="etcd-client.key", ca="etcd-client-ca.crt")
SERVER_KEYS = SignedSecretKeys(cert="server.crt", key="server.key", ca="server-ca.crt")
PEER_KEYS = SignedSecretKeys(cert="peer.crt", key="peer.key", ca="peer-ca.crt")

OPERATOR_LABELS = {"name": OPERATOR_NAME}


def cluster(namespace: str) -> dict[str, Any]:
    return manifests.etcd_cluster(ETCD_CLUSTER_NAME, namespace)


def client_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(CLIENT_SECRET_NAME, namespace)


def server_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(SERVER_SECRET_NAME, namespace)


def peer_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(PEER_SECRET_NAME, namespace)


def operator_service_account(namespace: str) -> dict[str, Any]:
    return manifests.service_account(OPERATOR_NAME, namespace)


def operator_role(namespace: str) -> dict[str, Any]:
    return manifests.role(OPERATOR_NAME, namespace)


def operator_role_binding(namespace: str) -> dict[str, Any]:
    return manifests.role_binding(OPERATOR_NAME, namespace)


def operator_deployment(namespace: str) -> dict[str, Any]:
    return manifests.deployment(OPERATOR_NAME, namespace)


def client_service_name() -> str:
    """Name of the client service the etcd operator creates for the cluster."""
    return f"{ETCD_CLUSTER_NAME}-client"


def client_url() -> str:
    return f"https://{client_service_name()}:{ETCD_CLIENT_PORT}"


def client_cert_config() -> CertConfig:
    return CertConfig(
        common_name="etcd-client",
        organization=("kubernetes",),
        ext_key_usages=(EXT_KEY_USAGE_CLIENT_AUTH,),
    )


def server_cert_config(namespace: str) -> CertConfig:
    client_svc = client_service_name()
    return CertConfig(
        common_name="etcd-server",
        organization=("kubernetes",),
        ext_key_usages=(EXT_KEY_USAGE_SERVER_AUTH, EXT_KEY_USAGE_CLIENT_AUTH),
        dns_names=(
            f"*.{ETCD_CLUSTER_NAME}.{namespace}.svc",
            f"*.{ETCD_CLUSTER_NAME}.{namespace}.svc.cluster.local",
            client_svc,
            f"{client_svc}.{namespace}.svc",
            f"{client_svc}.{namespace}.svc.cluster.local",
            "localhost",
        ),
        ip_addresses=("127.0.0.1",),
    )


def peer_cert_config(namespace: str) -> CertConfig:
    return CertConfig(
        common_name="etcd-peer",
        organization=("kubernetes",),
        ext_key_usages=(EXT_KEY_USAGE_SERVER_AUTH, EXT_KEY_USAGE_CLIENT_AUTH),
        dns_names=(
            f"*.{ETCD_CLUSTER_NAME}.{namespace}.svc",
            f"*.{ETCD_CLUSTER_NAME}.{namespace}.svc.cluster.local",
        ),
    )


def reconcile_operator_role(role: dict[str, Any]) -> None:
    role["rules"] = [
        {
            "apiGroups": [ETCD_API_GROUP],
            "resources": ["etcdclusters", "etcdbackups", "etcdrestores"],
            "verbs": ["*"],
        },
        {
            "apiGroups": [""],
            "resources": ["pods", "services", "endpoints", "persistentvolumeclaims", "events"],
            "verbs": ["*"],
        },
        {
            "apiGroups": ["apps"],
            "resources": ["deployments"],
            "verbs": ["*"],
        },
        {
            "apiGroups": [""],
            "resources": ["secrets"],
            "verbs": ["get"],
        },
    ]


def reconcile_operator_role_binding(binding: dict[str, Any]) -> None:
    namespace = binding["metadata"]["namespace"]
    binding["roleRef"] = {
        "apiGroup": "rbac.authorization.k8s.io",
        "kind": "Role",
        "name": OPERATOR_NAME,
    }
    binding["subjects"] = [
        {"kind": "ServiceAccount", "name": OPERATOR_NAME, "namespace": namespace},
    ]


def reconcile_operator_deployment(deployment: dict[str, Any], image: str) -> None:
    manifests.apply_fields(deployment, {"spec": {
        "replicas": 1,
        "selector": {"matchLabels": dict(OPERATOR_LABELS)},
        "template": {
            "metadata": {"labels": dict(OPERATOR_LABELS)},
            "spec": {
                "serviceAccountName": OPERATOR_NAME,
                "containers": [
                    {
                        "name": OPERATOR_NAME,
                        "image": image,
                        "command": ["etcd-operator"],
                        "args": ["-create-crd=false"],
                        "env": [
                            {
                                "name": "MY_POD_NAMESPACE",
                                "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
                            },
                            {
                                "name": "MY_POD_NAME",
                                "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}},
                            },
                        ],
                    }
                ],
            },
        },
    }})


def reconcile_cluster(etcd_cluster: dict[str, Any], size: int, version: str) -> None:
    manifests.apply_fields(etcd_cluster, {"spec": {
        "size": size,
        "version": version,
        "TLS": {
            "static": {
                "member": {
                    "peerSecret": PEER_SECRET_NAME,
                    "serverSecret": SERVER_SECRET_NAME,
                },
                "operatorSecret": CLIENT_SECRET_NAME,
            }
        },
    }})
