"""Main entry point for the HyperShift Lite Operator.

Run with ``kopf run -m hypershift_lite_operator.main``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import kopf
from kubernetes import config

from . import handlers  # noqa: F401
from . import health
from . import logging as structured_logging
from .tracing import initialize_tracing, shutdown_tracing


def load_kubernetes_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    # Set up structured JSON logging
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    structured_logging.setup_structured_logging(level if isinstance(level, int) else logging.INFO)

    # Use AnnotationsProgressStorage to avoid conflicts with status updates
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    settings.posting.level = logging.INFO
    settings.networking.request_timeout = 30.0
    # Passes are synchronous and run on this pool
    settings.execution.max_workers = int(os.getenv("OPERATOR_MAX_WORKERS", "4"))

    load_kubernetes_config()
    initialize_tracing()

    # Start metrics HTTP server with health check endpoints
    health.start_metrics_server(int(os.getenv("METRICS_PORT", "8080")))


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    """Flush pending trace spans before the process exits."""
    shutdown_tracing()
