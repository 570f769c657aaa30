"""Release image lookup by running a short-lived pod from the release image."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ...constants import CONTROLLER_NAME, LABEL_MANAGED_BY
from ...utils.errors import ReleaseLookupError
from ...utils.rate_limit import rate_limit_k8s
from .base import ReleaseImage, parse_image_references

logger = logging.getLogger(__name__)

RELEASE_LOOKUP_TIMEOUT_SECONDS = float(os.getenv("RELEASE_LOOKUP_TIMEOUT_SECONDS", "300"))
RELEASE_LOOKUP_POLL_SECONDS = float(os.getenv("RELEASE_LOOKUP_POLL_SECONDS", "2"))

IMAGE_REFERENCES_PATH = "/release-manifests/image-references"
POD_NAME_PREFIX = "release-info-"


def release_info_pod(pull_spec: str, pull_secret_name: str | None) -> dict[str, Any]:
    """Build the pod that prints the image references of a release."""
    pod: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "generateName": POD_NAME_PREFIX,
            "labels": {LABEL_MANAGED_BY: CONTROLLER_NAME},
        },
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "release",
                    "image": pull_spec,
                    "imagePullPolicy": "IfNotPresent",
                    "command": ["/bin/bash"],
                    "args": ["-c", f"cat {IMAGE_REFERENCES_PATH}"],
                }
            ],
        },
    }
    if pull_secret_name:
        pod["spec"]["imagePullSecrets"] = [{"name": pull_secret_name}]
    return pod


class PodReleaseImageProvider:
    """Resolve releases by reading image-references out of the release image.

    The lookup pod runs in the namespace of the requesting KubernetesService so
    it can use that namespace's pull secret. The pod is deleted once its output
    has been read, whether or not the lookup succeeded.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        default_namespace: str = "default",
        timeout: float = RELEASE_LOOKUP_TIMEOUT_SECONDS,
        poll_interval: float = RELEASE_LOOKUP_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.core_api = core_api or client.CoreV1Api()
        self.default_namespace = default_namespace
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def lookup(
        self,
        pull_spec: str,
        pull_secret_name: str | None = None,
        namespace: str | None = None,
    ) -> ReleaseImage:
        namespace = namespace or self.default_namespace
        logger.info(f"Looking up release image {pull_spec} in namespace {namespace}")
        try:
            created = rate_limit_k8s(self.core_api.create_namespaced_pod)(
                namespace=namespace, body=release_info_pod(pull_spec, pull_secret_name)
            )
        except ApiException as e:
            raise ReleaseLookupError(f"cannot create release info pod for {pull_spec}: {e.reason}") from e

        pod_name = created.metadata.name
        try:
            self._wait_for_completion(namespace, pod_name, pull_spec)
            output = rate_limit_k8s(self.core_api.read_namespaced_pod_log)(name=pod_name, namespace=namespace)
        except ApiException as e:
            raise ReleaseLookupError(f"cannot read release info pod {namespace}/{pod_name}: {e.reason}") from e
        finally:
            self._delete_pod(namespace, pod_name)

        return parse_image_references(pull_spec, output)

    def _wait_for_completion(self, namespace: str, pod_name: str, pull_spec: str) -> None:
        deadline = self._clock() + self.timeout
        while True:
            pod = rate_limit_k8s(self.core_api.read_namespaced_pod)(name=pod_name, namespace=namespace)
            phase = pod.status.phase if pod.status else None
            if phase == "Succeeded":
                return
            if phase == "Failed":
                raise ReleaseLookupError(f"release info pod for {pull_spec} failed")
            if self._clock() >= deadline:
                raise ReleaseLookupError(
                    f"timed out after {self.timeout:.0f}s waiting for release info pod for {pull_spec}"
                )
            self._sleep(self.poll_interval)

    def _delete_pod(self, namespace: str, pod_name: str) -> None:
        try:
            rate_limit_k8s(self.core_api.delete_namespaced_pod)(name=pod_name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                logger.warning(f"Failed to delete release info pod {namespace}/{pod_name}: {e.reason}")
