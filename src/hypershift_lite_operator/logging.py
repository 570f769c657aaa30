"""Structured logging configuration for the HyperShift Lite Operator.

Every line on stdout is one JSON object. Resource events are built by
:func:`log_resource_event`; records from kopf and the Kubernetes client are
wrapped by :class:`JsonFormatter` so the stream stays machine readable.
"""

import json
import logging
import sys
from typing import Any

from .utils.context import get_context_dict
from .utils.errors import sanitize_dict

# Client libraries that log every HTTP round trip at DEBUG
_NOISY_LOGGERS = ("kubernetes.client.rest", "urllib3.connectionpool")


class JsonFormatter(logging.Formatter):
    """Render plain records as JSON; records that already are JSON pass through."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if message.startswith("{") and message.endswith("}"):
            return message
        entry: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        entry.update(get_context_dict())
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_structured_logging(level: int = logging.INFO) -> None:
    """Route all logging to stdout as JSON at the given level."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def log_resource_event(
    logger: logging.Logger,
    controller: str,
    resource_kind: str,
    resource_name: str,
    namespace: str,
    uid: str,
    event: str,
    reason: str,
    message: str,
    level: int = logging.INFO,
    **kwargs: Any,
) -> None:
    """Log a structured resource event.

    Extra fields are passed through :func:`sanitize_dict`, so key material
    handed in by mistake never reaches the log.
    """
    log_data = {
        "level": logging.getLevelName(level),
        "controller": controller,
        "resource": resource_kind,
        "name": resource_name,
        "namespace": namespace,
        "uid": uid,
        "event": event,
        "reason": reason,
        "message": message,
    }
    log_data.update(get_context_dict())
    log_data.update(sanitize_dict(kwargs))
    logger.log(level, json.dumps(log_data, default=str))
