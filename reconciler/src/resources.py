from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class WatchEventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ResourceType:
    """Coordinates of a custom resource served through the custom objects API."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.plural}.{self.group}" if self.group else self.plural


@dataclass(frozen=True)
class ResourceIdentity:
    """Dedup and serialization key for queued work."""

    namespace: str | None
    name: str
    kind: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    object: dict[str, Any]
    resource_version: str | None = None


@dataclass(frozen=True)
class ReconcileRequest:
    """A watch event routed to one resource identity.

    ``requeue`` marks delayed re-deliveries scheduled by the engine.  They
    bypass change classification and are dropped once the identity is no
    longer tracked.
    """

    identity: ResourceIdentity
    event: WatchEvent
    requeue: bool = False


def object_metadata(obj: dict[str, Any] | None) -> dict[str, Any]:
    if not obj:
        return {}
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def resource_version_of(obj: dict[str, Any] | None) -> str | None:
    return object_metadata(obj).get("resourceVersion")


def finalizers_of(obj: dict[str, Any] | None) -> list[str]:
    finalizers = object_metadata(obj).get("finalizers")
    if not isinstance(finalizers, list):
        return []
    return [name for name in finalizers if isinstance(name, str)]


def generation_of(obj: dict[str, Any] | None) -> int | None:
    generation = object_metadata(obj).get("generation")
    return generation if isinstance(generation, int) else None


def is_deleting(obj: dict[str, Any] | None) -> bool:
    return bool(object_metadata(obj).get("deletionTimestamp"))


def identity_of(obj: dict[str, Any], kind: str) -> ResourceIdentity:
    metadata = object_metadata(obj)
    name = metadata.get("name")
    if not name:
        raise ValueError(f"{kind} object has no metadata.name")
    return ResourceIdentity(namespace=metadata.get("namespace") or None, name=name, kind=kind)
