"""Resource store backed by the Kubernetes API."""

from __future__ import annotations

import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ... import metrics
from ...constants import (
    API_GROUP,
    API_VERSION,
    ETCD_API_GROUP,
    ETCD_API_VERSION,
    FIELD_MANAGER,
    KIND_CONFIG_MAP,
    KIND_DEPLOYMENT,
    KIND_ETCD_CLUSTER,
    KIND_KUBERNETES_SERVICE,
    KIND_POD,
    KIND_ROLE,
    KIND_ROLE_BINDING,
    KIND_SECRET,
    KIND_SERVICE,
    KIND_SERVICE_ACCOUNT,
    PLURAL_ETCD_CLUSTER,
    PLURAL_KUBERNETES_SERVICE,
)
from ...utils.errors import ResourceStoreError
from ...utils.rate_limit import handle_rate_limit_error, rate_limit_k8s
from .base import object_key

# kind -> (api attribute, method suffix)
_TYPED_KINDS: dict[str, tuple[str, str]] = {
    KIND_SECRET: ("core", "secret"),
    KIND_CONFIG_MAP: ("core", "config_map"),
    KIND_SERVICE: ("core", "service"),
    KIND_SERVICE_ACCOUNT: ("core", "service_account"),
    KIND_POD: ("core", "pod"),
    KIND_DEPLOYMENT: ("apps", "deployment"),
    KIND_ROLE: ("rbac", "role"),
    KIND_ROLE_BINDING: ("rbac", "role_binding"),
}

# kind -> (group, version, plural)
_CUSTOM_KINDS: dict[str, tuple[str, str, str]] = {
    KIND_KUBERNETES_SERVICE: (API_GROUP, API_VERSION, PLURAL_KUBERNETES_SERVICE),
    KIND_ETCD_CLUSTER: (ETCD_API_GROUP, ETCD_API_VERSION, PLURAL_ETCD_CLUSTER),
}

_TYPED_API_VERSIONS: dict[str, str] = {
    KIND_SECRET: "v1",
    KIND_CONFIG_MAP: "v1",
    KIND_SERVICE: "v1",
    KIND_SERVICE_ACCOUNT: "v1",
    KIND_POD: "v1",
    KIND_DEPLOYMENT: "apps/v1",
    KIND_ROLE: "rbac.authorization.k8s.io/v1",
    KIND_ROLE_BINDING: "rbac.authorization.k8s.io/v1",
}


def _label_selector(labels: dict[str, str] | None) -> str | None:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class KubernetesResourceStore:
    """ResourceStore implementation using the official Kubernetes client."""

    def __init__(self, api_client: client.ApiClient | None = None):
        """Initialize the store.

        Args:
            api_client: Configured API client; the default configuration is
                used when omitted
        """
        self.api_client = api_client or client.ApiClient()
        self._apis = {
            "core": client.CoreV1Api(self.api_client),
            "apps": client.AppsV1Api(self.api_client),
            "rbac": client.RbacAuthorizationV1Api(self.api_client),
        }
        self._custom = client.CustomObjectsApi(self.api_client)

    def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Invoke an API method with rate limiting, retries and metrics."""
        attempt = 0
        while True:
            start_time = time.time()
            try:
                result = rate_limit_k8s(fn)(**kwargs)
                metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
                return result
            except ApiException as e:
                if e.status == 404:
                    metrics.api_call_total.labels(api_type="k8s", operation=operation, result="not_found").inc()
                    raise
                metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
                if handle_rate_limit_error(e, attempt):
                    attempt += 1
                    continue
                raise
            finally:
                duration = time.time() - start_time
                metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)

    def _to_dict(self, kind: str, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        data = self.api_client.sanitize_for_serialization(obj)
        # Typed responses omit TypeMeta
        data.setdefault("apiVersion", _TYPED_API_VERSIONS.get(kind))
        data.setdefault("kind", kind)
        return data

    def _typed(self, kind: str, verb: str) -> Callable[..., Any]:
        api_name, suffix = _TYPED_KINDS[kind]
        return getattr(self._apis[api_name], f"{verb}_namespaced_{suffix}")

    def _dispatch(self, verb: str, kind: str, namespace: str, **kwargs: Any) -> Any:
        operation = f"{verb}_{kind.lower()}"
        try:
            if kind in _CUSTOM_KINDS:
                group, version, plural = _CUSTOM_KINDS[kind]
                fn = getattr(self._custom, f"{verb}_namespaced_custom_object")
                return self._call(
                    operation, fn, group=group, version=version, namespace=namespace, plural=plural, **kwargs
                )
            if kind in _TYPED_KINDS:
                return self._call(operation, self._typed(kind, verb), namespace=namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise
            raise ResourceStoreError(f"failed to {verb} {kind} in {namespace}: {e.reason}") from e
        raise ValueError(f"unsupported kind {kind}")

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        verb = "get" if kind in _CUSTOM_KINDS else "read"
        try:
            return self._to_dict(kind, self._dispatch(verb, kind, namespace, name=name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, _ = object_key(obj)
        return self._to_dict(kind, self._dispatch("create", kind, namespace, body=obj, field_manager=FIELD_MANAGER))

    def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = object_key(obj)
        kwargs: dict[str, Any] = {"name": name, "body": obj, "field_manager": FIELD_MANAGER}
        return self._to_dict(kind, self._dispatch("replace", kind, namespace, **kwargs))

    def delete(self, kind: str, namespace: str, name: str) -> None:
        try:
            self._dispatch("delete", kind, namespace, name=name, propagation_policy="Background")
        except ApiException as e:
            if e.status != 404:
                raise

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = object_key(obj)
        if kind not in _CUSTOM_KINDS:
            raise ValueError(f"status updates are not supported for {kind}")
        group, version, plural = _CUSTOM_KINDS[kind]
        try:
            result = self._call(
                f"update_status_{kind.lower()}",
                self._custom.replace_namespaced_custom_object_status,
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name,
                body=obj,
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            raise ResourceStoreError(f"failed to update status of {kind} {namespace}/{name}: {e.reason}") from e
        return self._to_dict(kind, result)

    def list(
        self,
        kind: str,
        namespace: str,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        selector = _label_selector(label_selector)
        if selector:
            kwargs["label_selector"] = selector
        result = self._dispatch("list", kind, namespace, **kwargs)
        if isinstance(result, dict):
            return list(result.get("items", []))
        return [self._to_dict(kind, item) for item in result.items]
