"""Desired state of the kube-apiserver subsystem."""

from __future__ import annotations

import ipaddress
import json
import posixpath
from typing import Any

from ..services.pki.certs import EXT_KEY_USAGE_CLIENT_AUTH, EXT_KEY_USAGE_SERVER_AUTH, CertConfig
from ..services.pki.lifecycle import CA_CERT_KEY, KUBECONFIG_KEY, TLS_CERT_KEY, TLS_KEY_KEY
from . import etcd, manifests

NAME = "kube-apiserver"

SERVER_CERT_SECRET_NAME = "kas-server-crt"
AGGREGATOR_CERT_SECRET_NAME = "kas-aggregator-crt"
SERVICE_ACCOUNT_KEY_SECRET_NAME = "kas-sa-key"
LOCALHOST_KUBECONFIG_SECRET_NAME = "localhost-kubeconfig"
SERVICE_KUBECONFIG_SECRET_NAME = "kubeconfig"
AUDIT_CONFIG_NAME = "kas-audit-config"
CONFIG_NAME = "kas-config"
OAUTH_METADATA_NAME = "oauth-metadata"

SERVICE_SIGNER_PRIVATE_KEY = "service-account.key"
SERVICE_SIGNER_PUBLIC_KEY = "service-account.pub"

AUDIT_POLICY_KEY = "policy.yaml"
CONFIG_KEY = "config.json"
OAUTH_METADATA_KEY = "oauthMetadata.json"
AUDIT_LOG_FILE = "audit.log"

LABELS = {"app": NAME}

# Containers
INIT_BOOTSTRAP_CONTAINER = "init-bootstrap"
APPLY_BOOTSTRAP_CONTAINER = "apply-bootstrap"
KUBE_APISERVER_CONTAINER = "kube-apiserver"

# Volumes
BOOTSTRAP_MANIFESTS_VOLUME = "bootstrap-manifests"
LOCALHOST_KUBECONFIG_VOLUME = "localhost-kubeconfig"
WORK_LOGS_VOLUME = "logs"
CONFIG_VOLUME = "kas-config"
AUDIT_CONFIG_VOLUME = "audit-config"
ROOT_CA_VOLUME = "root-ca"
SERVER_CERT_VOLUME = "server-crt"
AGGREGATOR_CERT_VOLUME = "aggregator-crt"
SERVICE_ACCOUNT_KEY_VOLUME = "svcacct-key"
ETCD_CLIENT_CERT_VOLUME = "etcd-client-crt"
OAUTH_METADATA_VOLUME = "oauth-metadata"

# Mount paths
WORK_MOUNT_PATH = "/work"
APPLY_KUBECONFIG_MOUNT_PATH = "/var/secrets/localhost-kubeconfig"
WORK_LOGS_MOUNT_PATH = "/var/log/kube-apiserver"
CONFIG_MOUNT_PATH = "/etc/kubernetes/config"
AUDIT_CONFIG_MOUNT_PATH = "/etc/kubernetes/audit"
ROOT_CA_MOUNT_PATH = "/etc/kubernetes/certs/root-ca"
SERVER_CERT_MOUNT_PATH = "/etc/kubernetes/certs/server"
AGGREGATOR_CERT_MOUNT_PATH = "/etc/kubernetes/certs/aggregator"
ETCD_CLIENT_CERT_MOUNT_PATH = "/etc/kubernetes/certs/etcd"
SERVICE_ACCOUNT_KEY_MOUNT_PATH = "/etc/kubernetes/secrets/svcacct-key"
OAUTH_METADATA_MOUNT_PATH = "/etc/kubernetes/oauth"

DEFAULT_FEATURE_GATES = [
    "APIPriorityAndFairness=true",
    "RotateKubeletServerCertificate=true",
    "SupportPodPidsLimit=true",
    "NodeDisruptionExclusion=true",
    "ServiceNodeExclusion=true",
    "DownwardAPIHugePages=true",
    "LegacyNodeRoleBehavior=false",
]

ADMISSION_PLUGINS = [
    "CertificateApproval",
    "CertificateSigning",
    "CertificateSubjectRestriction",
    "DefaultIngressClass",
    "DefaultStorageClass",
    "DefaultTolerationSeconds",
    "LimitRanger",
    "MutatingAdmissionWebhook",
    "NamespaceLifecycle",
    "NodeRestriction",
    "OwnerReferencesPermissionEnforcement",
    "PersistentVolumeClaimResize",
    "PersistentVolumeLabel",
    "PodNodeSelector",
    "PodTolerationRestriction",
    "Priority",
    "ResourceQuota",
    "RuntimeClass",
    "ServiceAccount",
    "StorageObjectInUseProtection",
    "TaintNodesByCondition",
    "ValidatingAdmissionWebhook",
    "authorization.openshift.io/RestrictSubjectBindings",
    "authorization.openshift.io/ValidateRoleBindingRestriction",
    "config.openshift.io/DenyDeleteClusterConfiguration",
    "config.openshift.io/ValidateAPIServer",
    "config.openshift.io/ValidateAuthentication",
    "config.openshift.io/ValidateConsole",
    "config.openshift.io/ValidateFeatureGate",
    "config.openshift.io/ValidateImage",
    "config.openshift.io/ValidateOAuth",
    "config.openshift.io/ValidateProject",
    "config.openshift.io/ValidateScheduler",
    "image.openshift.io/ImagePolicy",
    "network.openshift.io/ExternalIPRanger",
    "network.openshift.io/RestrictedEndpointsAdmission",
    "quota.openshift.io/ClusterResourceQuota",
    "quota.openshift.io/ValidateClusterResourceQuota",
    "route.openshift.io/IngressAdmission",
    "scheduling.openshift.io/OriginPodNodeEnvironment",
    "security.openshift.io/DefaultSecurityContextConstraints",
    "security.openshift.io/SCCExecRestrictions",
    "security.openshift.io/SecurityContextConstraint",
    "security.openshift.io/ValidateSecurityContextConstraints",
]

CIPHER_SUITES = [
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
]

DEFAULT_AUDIT_POLICY = """
apiVersion: audit.k8s.io/v1beta1
kind: Policy
omitStages:
- RequestReceived
rules:
- level: None
  resources:
  - group: ''
    resources:
    - events
- level: None
  resources:
  - group: oauth.openshift.io
    resources:
    - oauthaccesstokens
    - oauthauthorizetokens
- level: None
  nonResourceURLs:
  - "/api*"
  - "/version"
  - "/healthz"
  - "/readyz"
  userGroups:
  - system:authenticated
  - system:unauthenticated
- level: Metadata
  omitStages:
  - RequestReceived
"""

OAUTH_METADATA = {
    "issuer": "https://oauth-openshift",
    "authorization_endpoint": "https://oauth-openshift/oauth/authorize",
    "token_endpoint": "https://oauth-openshift/oauth/token",
    "scopes_supported": [
        "user:check-access",
        "user:full",
        "user:info",
        "user:list-projects",
        "user:list-scoped-projects",
    ],
    "response_types_supported": ["code", "token"],
    "grant_types_supported": ["authorization_code", "implicit"],
    "code_challenge_methods_supported": ["plain", "S256"],
}

INIT_BOOTSTRAP_SCRIPT = """#!/bin/sh
cd /tmp
mkdir input output
/usr/bin/cluster-config-operator render \\
   --config-output-file config \\
   --asset-input-dir /tmp/input \\
   --asset-output-dir /tmp/output
cp /tmp/output/manifests/* {work_dir}
"""

APPLY_BOOTSTRAP_SCRIPT = """#!/bin/sh
while true; do
  if oc apply -f {work_dir}; then
    echo "Bootstrap manifests applied successfully."
    break
  fi
  sleep 1
done
while true; do
  sleep 1000
done
"""


def service(namespace: str) -> dict[str, Any]:
    return manifests.service(NAME, namespace)


def deployment(namespace: str) -> dict[str, Any]:
    return manifests.deployment(NAME, namespace)


def server_cert_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(SERVER_CERT_SECRET_NAME, namespace)


def aggregator_cert_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(AGGREGATOR_CERT_SECRET_NAME, namespace)


def service_account_key_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(SERVICE_ACCOUNT_KEY_SECRET_NAME, namespace)


def localhost_kubeconfig_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(LOCALHOST_KUBECONFIG_SECRET_NAME, namespace)


def service_kubeconfig_secret(namespace: str) -> dict[str, Any]:
    return manifests.secret(SERVICE_KUBECONFIG_SECRET_NAME, namespace)


def audit_config(namespace: str) -> dict[str, Any]:
    return manifests.config_map(AUDIT_CONFIG_NAME, namespace)


def config(namespace: str) -> dict[str, Any]:
    return manifests.config_map(CONFIG_NAME, namespace)


def oauth_metadata(namespace: str) -> dict[str, Any]:
    return manifests.config_map(OAUTH_METADATA_NAME, namespace)


def service_url(port: int) -> str:
    """URL of the API server as seen from inside the control plane namespace."""
    return f"https://{NAME}:{port}"


def localhost_url(port: int) -> str:
    """URL of the API server as seen from containers in its own pod."""
    return f"https://localhost:{port}"


def first_ip(cidr: str) -> str:
    """Return the first usable address of a network, the cluster service IP."""
    network = ipaddress.ip_network(cidr, strict=False)
    return str(network.network_address + 1)


def reconcile_service(svc: dict[str, Any], internal_port: int, external_port: int) -> None:
    spec = svc.setdefault("spec", {})
    ports = spec.get("ports") or []
    if ports:
        ports[0]["port"] = external_port
        ports[0]["targetPort"] = internal_port
    else:
        ports = [{"port": external_port, "targetPort": internal_port}]
    spec["ports"] = ports
    spec["selector"] = dict(LABELS)
    spec["type"] = "ClusterIP"


def server_cert_config(namespace: str, service_cidr: str) -> CertConfig:
    """Serving certificate valid for every name clients use to reach the API server."""
    return CertConfig(
        common_name="kubernetes",
        organization=("kubernetes",),
        ext_key_usages=(EXT_KEY_USAGE_SERVER_AUTH,),
        dns_names=(
            "localhost",
            "kubernetes",
            "kubernetes.default.svc",
            "kubernetes.default.svc.cluster.local",
            NAME,
            f"{NAME}.{namespace}.svc",
            f"{NAME}.{namespace}.svc.cluster.local",
        ),
        ip_addresses=("127.0.0.1", first_ip(service_cidr)),
    )


def aggregator_cert_config() -> CertConfig:
    return CertConfig(
        common_name="system:openshift-aggregator",
        organization=("kubernetes",),
        ext_key_usages=(EXT_KEY_USAGE_SERVER_AUTH, EXT_KEY_USAGE_CLIENT_AUTH),
    )


def reconcile_audit_config(cm: dict[str, Any]) -> None:
    if cm.get("data") is None:
        cm["data"] = {}
    cm["data"][AUDIT_POLICY_KEY] = DEFAULT_AUDIT_POLICY


def reconcile_oauth_metadata(cm: dict[str, Any]) -> None:
    if cm.get("data") is None:
        cm["data"] = {}
    cm["data"][OAUTH_METADATA_KEY] = json.dumps(OAUTH_METADATA, indent=2)


def generate_config(service_cidr: str, internal_port: int) -> dict[str, Any]:
    """Build the KubeAPIServerConfig consumed through --openshift-config."""
    root_ca_file = posixpath.join(ROOT_CA_MOUNT_PATH, CA_CERT_KEY)
    return {
        "kind": "KubeAPIServerConfig",
        "apiVersion": "kubecontrolplane.config.openshift.io/v1",
        "apiServerArguments": {
            "advertise-address": ["172.20.0.1"],
            "allow-privileged": ["true"],
            "anonymous-auth": ["true"],
            "api-audiences": ["https://kubernetes.default.svc"],
            "audit-log-format": ["json"],
            "audit-log-maxbackup": ["10"],
            "audit-log-maxsize": ["100"],
            "audit-log-path": [posixpath.join(WORK_LOGS_MOUNT_PATH, AUDIT_LOG_FILE)],
            "audit-policy-file": [posixpath.join(AUDIT_CONFIG_MOUNT_PATH, AUDIT_POLICY_KEY)],
            "authorization-mode": ["Scope", "SystemMasters", "RBAC", "Node"],
            "client-ca-file": [root_ca_file],
            "enable-admission-plugins": list(ADMISSION_PLUGINS),
            "enable-aggregator-routing": ["true"],
            "enable-logs-handler": ["false"],
            "enable-swagger-ui": ["true"],
            "endpoint-reconciler-type": ["lease"],
            "etcd-cafile": [posixpath.join(ETCD_CLIENT_CERT_MOUNT_PATH, etcd.CLIENT_KEYS.ca or "")],
            "etcd-certfile": [posixpath.join(ETCD_CLIENT_CERT_MOUNT_PATH, etcd.CLIENT_KEYS.cert)],
            "etcd-keyfile": [posixpath.join(ETCD_CLIENT_CERT_MOUNT_PATH, etcd.CLIENT_KEYS.key)],
            "etcd-prefix": ["kubernetes.io"],
            "etcd-servers": [etcd.client_url()],
            "event-ttl": ["3h"],
            "feature-gates": list(DEFAULT_FEATURE_GATES),
            "goaway-chance": ["0"],
            "http2-max-streams-per-connection": ["2000"],
            "insecure-port": ["0"],
            "kubernetes-service-node-port": ["0"],
            "max-mutating-requests-inflight": ["1000"],
            "max-requests-inflight": ["3000"],
            "min-request-timeout": ["3600"],
            "proxy-client-cert-file": [posixpath.join(AGGREGATOR_CERT_MOUNT_PATH, TLS_CERT_KEY)],
            "proxy-client-key-file": [posixpath.join(AGGREGATOR_CERT_MOUNT_PATH, TLS_KEY_KEY)],
            "requestheader-allowed-names": [
                "kube-apiserver-proxy",
                "system:kube-apiserver-proxy",
                "system:openshift-aggregator",
            ],
            "requestheader-client-ca-file": [root_ca_file],
            "requestheader-extra-headers-prefix": ["X-Remote-Extra-"],
            "requestheader-group-headers": ["X-Remote-Group"],
            "requestheader-username-headers": ["X-Remote-User"],
            "runtime-config": ["flowcontrol.apiserver.k8s.io/v1alpha1=true"],
            "service-account-issuer": ["https://kubernetes.default.svc"],
            "service-account-lookup": ["true"],
            "service-account-signing-key-file": [
                posixpath.join(SERVICE_ACCOUNT_KEY_MOUNT_PATH, SERVICE_SIGNER_PRIVATE_KEY)
            ],
            "service-node-port-range": ["30000-32767"],
            "shutdown-delay-duration": ["70s"],
            "storage-backend": ["etcd3"],
            "storage-media-type": ["application/vnd.kubernetes.protobuf"],
            "tls-cert-file": [posixpath.join(SERVER_CERT_MOUNT_PATH, TLS_CERT_KEY)],
            "tls-private-key-file": [posixpath.join(SERVER_CERT_MOUNT_PATH, TLS_KEY_KEY)],
        },
        "admission": {
            "pluginConfig": {
                "network.openshift.io/ExternalIPRanger": {
                    "location": "",
                    "configuration": {
                        "apiVersion": "network.openshift.io/v1",
                        "kind": "ExternalIPRangerAdmissionConfig",
                        "externalIPNetworkCIDRs": [],
                    },
                },
                "network.openshift.io/RestrictedEndpointsAdmission": {
                    "location": "",
                    "configuration": {
                        "apiVersion": "network.openshift.io/v1",
                        "kind": "RestrictedEndpointsAdmissionConfig",
                        "restrictedCIDRs": [service_cidr],
                    },
                },
            }
        },
        "servingInfo": {
            "bindAddress": f"0.0.0.0:{internal_port}",
            "bindNetwork": "tcp4",
            "cipherSuites": list(CIPHER_SUITES),
            "minTLSVersion": "VersionTLS12",
        },
        "corsAllowedOrigins": ["//127\\.0\\.0\\.1(:|$)", "//localhost(:|$)"],
        "authConfig": {
            "oauthMetadataFile": posixpath.join(OAUTH_METADATA_MOUNT_PATH, OAUTH_METADATA_KEY),
        },
        "consolePublicURL": "https://console-openshift-console",
        "imagePolicyConfig": {
            "internalRegistryHostname": "image-registry.openshift-image-registry.svc:5000",
        },
        "projectConfig": {"defaultNodeSelector": ""},
        "serviceAccountPublicKeyFiles": [posixpath.join(SERVICE_ACCOUNT_KEY_MOUNT_PATH, SERVICE_SIGNER_PUBLIC_KEY)],
        "servicesSubnet": service_cidr,
    }


def reconcile_config(cm: dict[str, Any], service_cidr: str, internal_port: int) -> None:
    if cm.get("data") is None:
        cm["data"] = {}
    generated = generate_config(service_cidr, internal_port)
    cm["data"][CONFIG_KEY] = json.dumps(generated, sort_keys=True)


def _probe(path: str, port: int, initial_delay: int) -> dict[str, Any]:
    return {
        "httpGet": {"path": path, "port": port, "scheme": "HTTPS"},
        "initialDelaySeconds": initial_delay,
        "timeoutSeconds": 10,
    }


def reconcile_deployment(
    dep: dict[str, Any],
    config_operator_image: str,
    cli_image: str,
    hyperkube_image: str,
    internal_port: int,
    replicas: int,
) -> None:
    """Bring the kube-apiserver deployment spec to its desired state.

    The pod renders bootstrap manifests in an init container, serves the API
    from the hyperkube image, and applies the rendered manifests through a
    sidecar talking to the local API server.
    """
    manifests.apply_fields(dep, {"spec": {
        "replicas": replicas,
        "selector": {"matchLabels": dict(LABELS)},
        "strategy": manifests.rolling_update_strategy(),
        "template": {
            "metadata": {"labels": dict(LABELS)},
            "spec": {
                "automountServiceAccountToken": False,
                "initContainers": [
                    {
                        "name": INIT_BOOTSTRAP_CONTAINER,
                        "image": config_operator_image,
                        "command": ["/bin/bash"],
                        "args": ["-c", INIT_BOOTSTRAP_SCRIPT.format(work_dir=WORK_MOUNT_PATH)],
                        "volumeMounts": [manifests.volume_mount(BOOTSTRAP_MANIFESTS_VOLUME, WORK_MOUNT_PATH)],
                    }
                ],
                "containers": [
                    {
                        "name": APPLY_BOOTSTRAP_CONTAINER,
                        "image": cli_image,
                        "command": ["/bin/bash"],
                        "args": ["-c", APPLY_BOOTSTRAP_SCRIPT.format(work_dir=WORK_MOUNT_PATH)],
                        "env": [
                            {
                                "name": "KUBECONFIG",
                                "value": posixpath.join(APPLY_KUBECONFIG_MOUNT_PATH, KUBECONFIG_KEY),
                            }
                        ],
                        "volumeMounts": [
                            manifests.volume_mount(BOOTSTRAP_MANIFESTS_VOLUME, WORK_MOUNT_PATH),
                            manifests.volume_mount(LOCALHOST_KUBECONFIG_VOLUME, APPLY_KUBECONFIG_MOUNT_PATH),
                        ],
                    },
                    {
                        "name": KUBE_APISERVER_CONTAINER,
                        "image": hyperkube_image,
                        "command": ["hyperkube"],
                        "args": [
                            "kube-apiserver",
                            f"--openshift-config={posixpath.join(CONFIG_MOUNT_PATH, CONFIG_KEY)}",
                            "-v5",
                        ],
                        "workingDir": WORK_LOGS_MOUNT_PATH,
                        "livenessProbe": _probe("/livez", internal_port, 45),
                        "readinessProbe": _probe("/healthz", internal_port, 10),
                        "volumeMounts": [
                            manifests.volume_mount(WORK_LOGS_VOLUME, WORK_LOGS_MOUNT_PATH),
                            manifests.volume_mount(CONFIG_VOLUME, CONFIG_MOUNT_PATH),
                            manifests.volume_mount(AUDIT_CONFIG_VOLUME, AUDIT_CONFIG_MOUNT_PATH),
                            manifests.volume_mount(ROOT_CA_VOLUME, ROOT_CA_MOUNT_PATH),
                            manifests.volume_mount(SERVER_CERT_VOLUME, SERVER_CERT_MOUNT_PATH),
                            manifests.volume_mount(AGGREGATOR_CERT_VOLUME, AGGREGATOR_CERT_MOUNT_PATH),
                            manifests.volume_mount(ETCD_CLIENT_CERT_VOLUME, ETCD_CLIENT_CERT_MOUNT_PATH),
                            manifests.volume_mount(SERVICE_ACCOUNT_KEY_VOLUME, SERVICE_ACCOUNT_KEY_MOUNT_PATH),
                            manifests.volume_mount(OAUTH_METADATA_VOLUME, OAUTH_METADATA_MOUNT_PATH),
                        ],
                    },
                ],
                "volumes": [
                    manifests.empty_dir_volume(BOOTSTRAP_MANIFESTS_VOLUME),
                    manifests.secret_volume(LOCALHOST_KUBECONFIG_VOLUME, LOCALHOST_KUBECONFIG_SECRET_NAME),
                    manifests.empty_dir_volume(WORK_LOGS_VOLUME),
                    manifests.config_map_volume(CONFIG_VOLUME, CONFIG_NAME),
                    manifests.config_map_volume(AUDIT_CONFIG_VOLUME, AUDIT_CONFIG_NAME),
                    manifests.secret_volume(ROOT_CA_VOLUME, manifests.ROOT_CA_SECRET_NAME),
                    manifests.secret_volume(SERVER_CERT_VOLUME, SERVER_CERT_SECRET_NAME),
                    manifests.secret_volume(AGGREGATOR_CERT_VOLUME, AGGREGATOR_CERT_SECRET_NAME),
                    manifests.secret_volume(SERVICE_ACCOUNT_KEY_VOLUME, SERVICE_ACCOUNT_KEY_SECRET_NAME),
                    manifests.secret_volume(ETCD_CLIENT_CERT_VOLUME, etcd.CLIENT_SECRET_NAME),
                    manifests.config_map_volume(OAUTH_METADATA_VOLUME, OAUTH_METADATA_NAME),
                ],
            },
        },
    }})
