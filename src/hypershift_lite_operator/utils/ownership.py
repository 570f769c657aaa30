"""Owner reference helpers.

Every object created for a KubernetesService carries an owner reference back
to it, so deleting the KubernetesService lets the platform garbage collector
reclaim the whole control plane.
"""

from __future__ import annotations

from typing import Any

from ..constants import API_GROUP_VERSION, KIND_KUBERNETES_SERVICE


def owner_reference(owner: dict[str, Any]) -> dict[str, Any]:
    """Build the owner reference pointing at a KubernetesService."""
    meta = owner.get("metadata", {})
    return {
        "apiVersion": owner.get("apiVersion", API_GROUP_VERSION),
        "kind": owner.get("kind", KIND_KUBERNETES_SERVICE),
        "name": meta.get("name"),
        "uid": meta.get("uid"),
        "blockOwnerDeletion": True,
    }


def _api_group(api_version: str | None) -> str | None:
    if not api_version:
        return None
    if "/" not in api_version:
        # Core group, e.g. "v1"
        return ""
    return api_version.split("/", 1)[0]


def refer_same_object(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Return True if two owner references point at the same object.

    References match on API group, kind and name; the version is ignored.
    """
    group_a = _api_group(a.get("apiVersion"))
    group_b = _api_group(b.get("apiVersion"))
    if group_a is None or group_b is None:
        return False
    return group_a == group_b and a.get("kind") == b.get("kind") and a.get("name") == b.get("name")


def index_owner_ref(owner_references: list[dict[str, Any]], ref: dict[str, Any]) -> int:
    """Return the index of the owner reference in the list, or -1."""
    for index, existing in enumerate(owner_references):
        if refer_same_object(existing, ref):
            return index
    return -1


def ensure_owner_ref(obj: dict[str, Any], ref: dict[str, Any]) -> None:
    """Make sure the object's metadata contains the owner reference."""
    metadata = obj.setdefault("metadata", {})
    owner_references = metadata.get("ownerReferences") or []
    idx = index_owner_ref(owner_references, ref)
    if idx == -1:
        owner_references.append(ref)
    else:
        owner_references[idx] = ref
    metadata["ownerReferences"] = owner_references


def find_owner(obj: dict[str, Any], kind: str = KIND_KUBERNETES_SERVICE) -> dict[str, Any] | None:
    """Return the first owner reference of the given kind on an object."""
    for ref in obj.get("metadata", {}).get("ownerReferences") or []:
        if ref.get("kind") == kind and _api_group(ref.get("apiVersion")) == _api_group(API_GROUP_VERSION):
            return ref
    return None
