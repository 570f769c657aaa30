"""Desired state of the kube-controller-manager subsystem."""

from __future__ import annotations

import json
import posixpath
from typing import Any

from ..services.pki.certs import (
    EXT_KEY_USAGE_CLIENT_AUTH,
    EXT_KEY_USAGE_SERVER_AUTH,
    KEY_USAGE_CERT_SIGN,
    KEY_USAGE_DIGITAL_SIGNATURE,
    KEY_USAGE_KEY_ENCIPHERMENT,
    VALIDITY_TEN_YEARS,
    CertConfig,
)
from ..services.pki.lifecycle import CA_CERT_KEY, KUBECONFIG_KEY, SIGNER_KEYS
from . import kas, manifests

NAME = "kube-controller-manager"

CLUSTER_SIGNER_SECRET_NAME = "cluster-signer"
CONFIG_NAME = "kcm-config"
CONFIG_KEY = "config.json"

LABELS = {"app": NAME}

CONFIG_VOLUME = "kcm-config"
ROOT_CA_VOLUME = "root-ca"
WORK_LOGS_VOLUME = "logs"
KUBECONFIG_VOLUME = "kubeconfig"
CERT_DIR_VOLUME = "certs"
CLUSTER_SIGNER_VOLUME = "cluster-signer"
SERVICE_SIGNER_VOLUME = "service-signer"

CONFIG_MOUNT_PATH = "/etc/kubernetes/config"
ROOT_CA_MOUNT_PATH = "/etc/kubernetes/certs/root-ca"
WORK_LOGS_MOUNT_PATH = "/var/log/kube-controller-manager"
KUBECONFIG_MOUNT_PATH = "/etc/kubernetes/secrets/svc-kubeconfig"
CERT_DIR_MOUNT_PATH = "/var/run/kubernetes"
CLUSTER_SIGNER_MOUNT_PATH = "/etc/kubernetes/certs/cluster-signer"
SERVICE_SIGNER_MOUNT_PATH = "/etc/kubernetes/certs/service-signer"

CLUSTER_SIGNER_KEYS = SIGNER_KEYS


def cluster_signer_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(CLUSTER_SIGNER_SECRET_NAME, namespace)


def config(namespace: str) -> dict[str, Any]:
    return manifests.config_map(CONFIG_NAME, namespace)


def deployment(namespace: str) -> dict[str, Any]:
    return manifests.deployment(NAME, namespace)


def cluster_signer_config() -> CertConfig:
    """Second-tier CA the controller manager uses to sign CSRs."""
    return CertConfig(
        common_name="cluster-signer",
        organization=("openshift",),
        key_usages=frozenset({KEY_USAGE_DIGITAL_SIGNATURE, KEY_USAGE_KEY_ENCIPHERMENT, KEY_USAGE_CERT_SIGN}),
        ext_key_usages=(EXT_KEY_USAGE_SERVER_AUTH, EXT_KEY_USAGE_CLIENT_AUTH),
        validity=VALIDITY_TEN_YEARS,
        is_ca=True,
    )


def generate_config() -> dict[str, Any]:
    return {
        "kind": "KubeControllerManagerConfig",
        "apiVersion": "kubecontrolplane.config.openshift.io/v1",
        "extendedArguments": {},
        "serviceServingCert": {"certFile": ""},
    }


def reconcile_config(cm: dict[str, Any]) -> None:
    if cm.get("data") is None:
        cm["data"] = {}
    cm["data"][CONFIG_KEY] = json.dumps(generate_config(), sort_keys=True)


def args(pod_cidr: str, service_cidr: str) -> list[str]:
    """Command line of the controller manager."""
    kubeconfig_path = posixpath.join(KUBECONFIG_MOUNT_PATH, KUBECONFIG_KEY)
    result = [
        f"--openshift-config={posixpath.join(CONFIG_MOUNT_PATH, CONFIG_KEY)}",
        f"--kubeconfig={kubeconfig_path}",
        f"--authentication-kubeconfig={kubeconfig_path}",
        f"--authorization-kubeconfig={kubeconfig_path}",
        "--allocate-node-cidrs=true",
        f"--cert-dir={CERT_DIR_MOUNT_PATH}",
        f"--cluster-cidr={pod_cidr}",
        f"--cluster-signing-cert-file={posixpath.join(CLUSTER_SIGNER_MOUNT_PATH, CLUSTER_SIGNER_KEYS.cert)}",
        f"--cluster-signing-key-file={posixpath.join(CLUSTER_SIGNER_MOUNT_PATH, CLUSTER_SIGNER_KEYS.key)}",
        "--configure-cloud-routes=false",
        "--controllers=*",
        "--controllers=-ttl",
        "--controllers=-bootstrapsigner",
        "--controllers=-tokencleaner",
        "--enable-dynamic-provisioning=true",
        "--kube-api-burst=300",
        "--kube-api-qps=150",
        "--leader-elect-resource-lock=configmaps",
        "--leader-elect=true",
        "--leader-elect-retry-period=3s",
        "--port=0",
        f"--root-ca-file={posixpath.join(ROOT_CA_MOUNT_PATH, CA_CERT_KEY)}",
        "--secure-port=10257",
        f"--service-account-private-key-file={posixpath.join(SERVICE_SIGNER_MOUNT_PATH, kas.SERVICE_SIGNER_PRIVATE_KEY)}",
        f"--service-cluster-ip-range={service_cidr}",
        "--use-service-account-credentials=true",
        "--experimental-cluster-signing-duration=26280h",
    ]
    result.extend(f"--feature-gates={gate}" for gate in kas.DEFAULT_FEATURE_GATES)
    return result


def reconcile_deployment(
    dep: dict[str, Any],
    pod_cidr: str,
    service_cidr: str,
    hyperkube_image: str,
    replicas: int,
) -> None:
    manifests.apply_fields(dep, {"spec": {
        "replicas": replicas,
        "selector": {"matchLabels": dict(LABELS)},
        "strategy": manifests.rolling_update_strategy(),
        "template": {
            "metadata": {"labels": dict(LABELS)},
            "spec": {
                "automountServiceAccountToken": False,
                "containers": [
                    {
                        "name": NAME,
                        "image": hyperkube_image,
                        "command": ["hyperkube", "kube-controller-manager"],
                        "args": args(pod_cidr, service_cidr),
                        "volumeMounts": [
                            manifests.volume_mount(CONFIG_VOLUME, CONFIG_MOUNT_PATH),
                            manifests.volume_mount(ROOT_CA_VOLUME, ROOT_CA_MOUNT_PATH),
                            manifests.volume_mount(WORK_LOGS_VOLUME, WORK_LOGS_MOUNT_PATH),
                            manifests.volume_mount(KUBECONFIG_VOLUME, KUBECONFIG_MOUNT_PATH),
                            manifests.volume_mount(CLUSTER_SIGNER_VOLUME, CLUSTER_SIGNER_MOUNT_PATH),
                            manifests.volume_mount(CERT_DIR_VOLUME, CERT_DIR_MOUNT_PATH),
                            manifests.volume_mount(SERVICE_SIGNER_VOLUME, SERVICE_SIGNER_MOUNT_PATH),
                        ],
                    }
                ],
                "volumes": [
                    manifests.config_map_volume(CONFIG_VOLUME, CONFIG_NAME),
                    manifests.secret_volume(ROOT_CA_VOLUME, manifests.ROOT_CA_SECRET_NAME),
                    manifests.empty_dir_volume(WORK_LOGS_VOLUME),
                    manifests.secret_volume(KUBECONFIG_VOLUME, kas.SERVICE_KUBECONFIG_SECRET_NAME),
                    manifests.secret_volume(CLUSTER_SIGNER_VOLUME, CLUSTER_SIGNER_SECRET_NAME),
                    manifests.empty_dir_volume(CERT_DIR_VOLUME),
                    manifests.secret_volume(SERVICE_SIGNER_VOLUME, kas.SERVICE_ACCOUNT_KEY_SECRET_NAME),
                ],
            },
        },
    }})
