from __future__ import annotations

from typing import Any, NamedTuple

from ingress_operator.src.errors import KeyExtractionError


class OwnerRef(NamedTuple):
    """Identifier pair pointing from a derived object back at its owner.

    Only used for lookup; it carries no reference to the owner object itself.
    """

    kind: str
    name: str


def make_key(namespace: str | None, name: str) -> str:
    if namespace:
        return f"{namespace}/{name}"
    return name


def object_key(obj: Any) -> str:
    """Return the ``namespace/name`` key of a kube API object.

    Cluster-scoped objects (no namespace) are keyed by name alone.
    """
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        raise KeyExtractionError(f"object has no metadata: {obj!r}")
    name = getattr(metadata, "name", None)
    if not name:
        raise KeyExtractionError(f"object has no metadata.name: {obj!r}")
    return make_key(getattr(metadata, "namespace", None), name)


def split_key(key: str) -> tuple[str, str]:
    """Split a key into ``(namespace, name)``; namespace is empty for cluster-scoped keys."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise KeyExtractionError(f"unexpected key format: {key!r}")


def controller_of(obj: Any) -> OwnerRef | None:
    """Return the controlling owner reference of *obj*, or ``None``.

    Only the reference flagged ``controller: true`` counts; plain owner
    references are ignored.
    """
    metadata = getattr(obj, "metadata", None)
    references = getattr(metadata, "owner_references", None) or []
    for reference in references:
        if getattr(reference, "controller", None):
            return OwnerRef(kind=reference.kind, name=reference.name)
    return None
