"""Derivation of subsystem availability from the live workload status."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from ..builders import kas, kcm
from ..constants import (
    COND_ETCD_AVAILABLE,
    COND_KAS_AVAILABLE,
    COND_KCM_AVAILABLE,
    ETCD_BOOTSTRAP_TIMEOUT_SECONDS,
    ETCD_CLUSTER_NAME,
    KIND_DEPLOYMENT,
    KIND_ETCD_CLUSTER,
    KIND_POD,
    LABEL_ETCD_CLUSTER,
    REASON_DEPLOYMENT_NOT_FOUND,
    REASON_ETCD_CLUSTER_NOT_FOUND,
    REASON_ETCD_FAILED,
    REASON_ETCD_RUNNING,
    REASON_KAS_RUNNING,
    REASON_KAS_SCALING_UP,
    REASON_KCM_RUNNING,
    REASON_KCM_SCALING_UP,
    REASON_SCALING_UP,
    STATUS_FALSE,
    STATUS_TRUE,
)
from ..services.store.base import ResourceStore
from ..utils.conditions import get_condition, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubsystemStatus:
    """Condition derived for one subsystem.

    ``recreate`` is set when the workload is beyond recovery and must be
    deleted so the next pass creates it from scratch.
    """

    condition_type: str
    status: str
    reason: str
    message: str
    recreate: bool = False

    @property
    def available(self) -> bool:
        return self.status == STATUS_TRUE


class SubsystemStatusPolicy:
    """Base class of the per-subsystem availability policies."""

    subsystem: str = ""
    condition_type: str = ""
    workload_kind: str = ""

    def workload_name(self) -> str:
        raise NotImplementedError

    def fetch(self, store: ResourceStore, namespace: str) -> dict[str, Any] | None:
        """Fetch the workload; None means it does not exist yet."""
        return store.get(self.workload_kind, namespace, self.workload_name())

    def evaluate(
        self,
        workload: dict[str, Any] | None,
        store: ResourceStore,
        now: datetime,
    ) -> SubsystemStatus:
        raise NotImplementedError

    def _status(self, status: str, reason: str, message: str, recreate: bool = False) -> SubsystemStatus:
        return SubsystemStatus(self.condition_type, status, reason, message, recreate)


class DeploymentStatusPolicy(SubsystemStatusPolicy):
    """Availability of a subsystem run as a single Deployment.

    The subsystem is available once the Deployment reports Available=True and
    has at least one available replica.
    """

    workload_kind = KIND_DEPLOYMENT

    def __init__(
        self,
        subsystem: str,
        condition_type: str,
        deployment_name: str,
        running: tuple[str, str],
        scaling_up: tuple[str, str],
    ):
        self.subsystem = subsystem
        self.condition_type = condition_type
        self.deployment_name = deployment_name
        self.running = running
        self.scaling_up = scaling_up

    def workload_name(self) -> str:
        return self.deployment_name

    def evaluate(
        self,
        workload: dict[str, Any] | None,
        store: ResourceStore,
        now: datetime,
    ) -> SubsystemStatus:
        if workload is None:
            return self._status(
                STATUS_FALSE,
                REASON_DEPLOYMENT_NOT_FOUND,
                f"Deployment {self.deployment_name} does not exist yet",
            )
        status = workload.get("status") or {}
        available = get_condition(status.get("conditions") or [], "Available")
        if available is not None and available.get("status") == STATUS_TRUE and (status.get("availableReplicas") or 0) > 0:
            return self._status(STATUS_TRUE, *self.running)
        return self._status(STATUS_FALSE, *self.scaling_up)


class EtcdStatusPolicy(SubsystemStatusPolicy):
    """Availability of the etcd cluster, including bootstrap failure detection.

    A cluster that never gets a ready member within the bootstrap timeout, or
    a multi-member cluster stuck without quorum after one of its pods has
    terminated, is flagged for recreation.
    """

    subsystem = "etcd"
    condition_type = COND_ETCD_AVAILABLE
    workload_kind = KIND_ETCD_CLUSTER

    def __init__(self, bootstrap_timeout: timedelta = timedelta(seconds=ETCD_BOOTSTRAP_TIMEOUT_SECONDS)):
        self.bootstrap_timeout = bootstrap_timeout

    def workload_name(self) -> str:
        return ETCD_CLUSTER_NAME

    def evaluate(
        self,
        workload: dict[str, Any] | None,
        store: ResourceStore,
        now: datetime,
    ) -> SubsystemStatus:
        if workload is None:
            return self._status(STATUS_FALSE, REASON_ETCD_CLUSTER_NOT_FOUND, "Etcd cluster does not exist yet")

        status = workload.get("status") or {}
        available = get_condition(status.get("conditions") or [], "Available")
        if available is not None and available.get("status") == STATUS_TRUE:
            return self._status(STATUS_TRUE, REASON_ETCD_RUNNING, "Etcd cluster is running and available")

        ready_members = len((status.get("members") or {}).get("ready") or [])
        if ready_members == 0 and self._age(workload, now) > self.bootstrap_timeout:
            return self._status(
                STATUS_FALSE,
                REASON_ETCD_FAILED,
                "Etcd cluster failed to bootstrap within timeout, recreating",
                recreate=True,
            )

        size = (workload.get("spec") or {}).get("size") or 0
        if size > 1 and ready_members <= 1 and self._has_terminated_pods(workload, store):
            return self._status(
                STATUS_FALSE,
                REASON_ETCD_FAILED,
                "Etcd has failed to achieve quorum after bootstrap, recreating",
                recreate=True,
            )

        return self._status(STATUS_FALSE, REASON_SCALING_UP, "Etcd cluster is scaling up")

    @staticmethod
    def _age(workload: dict[str, Any], now: datetime) -> timedelta:
        created = workload.get("metadata", {}).get("creationTimestamp")
        if not created:
            return timedelta(0)
        return now - parse_timestamp(created)

    @staticmethod
    def _has_terminated_pods(workload: dict[str, Any], store: ResourceStore) -> bool:
        meta = workload["metadata"]
        pods = store.list(KIND_POD, meta["namespace"], {LABEL_ETCD_CLUSTER: meta["name"]})
        for pod in pods:
            for container in (pod.get("status") or {}).get("containerStatuses") or []:
                if (container.get("state") or {}).get("terminated"):
                    logger.info(f"Etcd pod {pod['metadata']['name']} has a terminated container")
                    return True
        return False


def default_policies() -> list[SubsystemStatusPolicy]:
    """Status policies in pass order: etcd, API server, controller manager."""
    return [
        EtcdStatusPolicy(),
        DeploymentStatusPolicy(
            subsystem="kube-apiserver",
            condition_type=COND_KAS_AVAILABLE,
            deployment_name=kas.NAME,
            running=(REASON_KAS_RUNNING, "Kube APIServer is running and available"),
            scaling_up=(REASON_KAS_SCALING_UP, "Kube APIServer is not yet ready"),
        ),
        DeploymentStatusPolicy(
            subsystem="kube-controller-manager",
            condition_type=COND_KCM_AVAILABLE,
            deployment_name=kcm.NAME,
            running=(REASON_KCM_RUNNING, "Kube controller manager is running and available"),
            scaling_up=(REASON_KCM_SCALING_UP, "Kube controller manager is not yet ready"),
        ),
    ]
