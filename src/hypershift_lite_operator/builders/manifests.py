"""Skeletons of the objects owned by a KubernetesService.

Each factory returns the identity of an object (apiVersion, kind, name and
namespace) and nothing else; the subsystem builders fill in the desired state
with :func:`apply_fields`.
"""

from __future__ import annotations

import copy
from typing import Any

from ..constants import (
    ETCD_API_GROUP,
    ETCD_API_VERSION,
    KIND_CONFIG_MAP,
    KIND_DEPLOYMENT,
    KIND_ETCD_CLUSTER,
    KIND_ROLE,
    KIND_ROLE_BINDING,
    KIND_SECRET,
    KIND_SERVICE,
    KIND_SERVICE_ACCOUNT,
)

ROOT_CA_SECRET_NAME = "root-ca"


def _object(api_version: str, kind: str, name: str, namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace},
    }


def secret(name: str, namespace: str) -> dict[str, Any]:
    return _object("v1", KIND_SECRET, name, namespace)


def config_map(name: str, namespace: str) -> dict[str, Any]:
    return _object("v1", KIND_CONFIG_MAP, name, namespace)


def service(name: str, namespace: str) -> dict[str, Any]:
    return _object("v1", KIND_SERVICE, name, namespace)


def service_account(name: str, namespace: str) -> dict[str, Any]:
    return _object("v1", KIND_SERVICE_ACCOUNT, name, namespace)


def role(name: str, namespace: str) -> dict[str, Any]:
    return _object("rbac.authorization.k8s.io/v1", KIND_ROLE, name, namespace)


def role_binding(name: str, namespace: str) -> dict[str, Any]:
    return _object("rbac.authorization.k8s.io/v1", KIND_ROLE_BINDING, name, namespace)


def deployment(name: str, namespace: str) -> dict[str, Any]:
    return _object("apps/v1", KIND_DEPLOYMENT, name, namespace)


def etcd_cluster(name: str, namespace: str) -> dict[str, Any]:
    return _object(f"{ETCD_API_GROUP}/{ETCD_API_VERSION}", KIND_ETCD_CLUSTER, name, namespace)


def root_ca_secret(namespace: str) -> dict[str, Any]:
    """Secret holding the self-signed root CA of a control plane."""
    return secret(ROOT_CA_SECRET_NAME, namespace)


def secret_volume(name: str, secret_name: str) -> dict[str, Any]:
    return {"name": name, "secret": {"secretName": secret_name}}


def config_map_volume(name: str, config_map_name: str) -> dict[str, Any]:
    return {"name": name, "configMap": {"name": config_map_name}}


def empty_dir_volume(name: str) -> dict[str, Any]:
    return {"name": name, "emptyDir": {}}


def volume_mount(name: str, mount_path: str) -> dict[str, Any]:
    return {"name": name, "mountPath": mount_path}


def rolling_update_strategy() -> dict[str, Any]:
    """Deployment strategy shared by the control plane workloads."""
    return {"type": "RollingUpdate", "rollingUpdate": {"maxSurge": 3, "maxUnavailable": 1}}


def _names_line_up(live: list[Any], desired: list[Any]) -> bool:
    return len(live) == len(desired) and all(
        isinstance(a, dict) and isinstance(b, dict) and "name" in b and a.get("name") == b["name"]
        for a, b in zip(live, desired)
    )


def apply_fields(live: dict[str, Any], desired: dict[str, Any]) -> None:
    """Overlay ``desired`` onto ``live`` in place, keeping fields only ``live`` has.

    Values the API server defaults (``revisionHistoryLimit``, ``dnsPolicy``,
    ``imagePullPolicy``, volume ``defaultMode`` and so on) are left as they
    are, so an object already in its desired state compares equal to the live
    one and is not replaced. Lists of named items such as containers, volumes
    and env vars are merged item by item when their names line up in order;
    any other list is replaced outright.
    """
    for key, value in desired.items():
        current = live.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            apply_fields(current, value)
        elif isinstance(value, list) and isinstance(current, list) and _names_line_up(current, value):
            for current_item, item in zip(current, value):
                apply_fields(current_item, item)
        else:
            live[key] = copy.deepcopy(value)
