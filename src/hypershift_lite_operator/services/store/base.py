"""Resource store interface and the create-or-update primitive built on it."""

from __future__ import annotations

import copy
import enum
from typing import Any, Callable, Protocol


class OperationResult(str, enum.Enum):
    """Outcome of a create-or-update call."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class ResourceStore(Protocol):
    """Protocol defining the object store operations the engine consumes.

    Objects are plain dicts shaped like Kubernetes API bodies (apiVersion,
    kind, metadata, ...). Every operation is scoped to kind + namespace + name.
    """

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Fetch an object, returning None if it does not exist."""
        ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create an object and return the stored copy."""
        ...

    def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an object; metadata.resourceVersion guards concurrent writes."""
        ...

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object; owned objects are garbage collected by the platform."""
        ...

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Write the status subresource of an object and return the stored copy."""
        ...

    def list(
        self,
        kind: str,
        namespace: str,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind in a namespace matching all given labels."""
        ...


def object_key(obj: dict[str, Any]) -> tuple[str, str, str]:
    """Return the (kind, namespace, name) key of an object."""
    meta = obj.get("metadata", {})
    return obj["kind"], meta.get("namespace", ""), meta["name"]


def create_or_update(
    store: ResourceStore,
    obj: dict[str, Any],
    mutate: Callable[[dict[str, Any]], None],
) -> tuple[dict[str, Any], OperationResult]:
    """Create or update an object so it matches the state ``mutate`` describes.

    The live object is fetched by the key of ``obj``. If it does not exist,
    ``mutate`` is applied to a copy of ``obj`` and the result is created.
    Otherwise ``mutate`` is applied to a copy of the live object and the object
    is replaced only if that changed anything.

    Args:
        store: Resource store
        obj: Skeleton object carrying apiVersion, kind and metadata name/namespace
        mutate: Callback that brings an object to its desired state in place;
            exceptions it raises abort the call before any write

    Returns:
        Tuple of the resulting object and what was done to it
    """
    kind, namespace, name = object_key(obj)
    existing = store.get(kind, namespace, name)

    if existing is None:
        desired = copy.deepcopy(obj)
        mutate(desired)
        return store.create(desired), OperationResult.CREATED

    desired = copy.deepcopy(existing)
    mutate(desired)
    if desired == existing:
        return existing, OperationResult.UNCHANGED
    return store.replace(desired), OperationResult.UPDATED
