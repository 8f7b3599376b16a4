from __future__ import annotations

import copy
import threading
from enum import Enum
from typing import Any

from reconciler.src.resources import ResourceIdentity, finalizers_of

# Metadata fields the API server rewrites on every write.
_VOLATILE_METADATA = ("resourceVersion", "managedFields", "generation", "finalizers")


class ChangeType(str, Enum):
    OTHER = "Other"
    STATUS_UPDATE = "StatusUpdate"
    FINALIZER_UPDATE = "FinalizerUpdate"
    FINALIZING = "Finalizing"
    NO_CHANGES = "NoChanges"


def _without_volatile_fields(obj: dict[str, Any]) -> dict[str, Any]:
    stripped = {key: value for key, value in obj.items() if key != "status"}
    metadata = stripped.get("metadata")
    if isinstance(metadata, dict):
        stripped["metadata"] = {
            key: value for key, value in metadata.items() if key not in _VOLATILE_METADATA
        }
    return stripped


def classify_change(old: dict[str, Any] | None, new: dict[str, Any]) -> ChangeType:
    """Describe what differs between two revisions of the same object.

    Spec, labels and annotations win over status; status wins over the
    finalizer list.  ``FINALIZING`` is decided by the caller, which knows
    which finalizers it owns.
    """
    if old is None:
        return ChangeType.OTHER
    if _without_volatile_fields(old) != _without_volatile_fields(new):
        return ChangeType.OTHER
    if old.get("status") != new.get("status"):
        return ChangeType.STATUS_UPDATE
    if finalizers_of(old) != finalizers_of(new):
        return ChangeType.FINALIZER_UPDATE
    return ChangeType.NO_CHANGES


class ResourceCache:
    """Last-seen revision of every object a controller has observed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[ResourceIdentity, dict[str, Any]] = {}

    def get(self, identity: ResourceIdentity) -> dict[str, Any] | None:
        with self._lock:
            cached = self._objects.get(identity)
        return copy.deepcopy(cached) if cached is not None else None

    def upsert(self, identity: ResourceIdentity, obj: dict[str, Any]) -> ChangeType:
        """Store ``obj`` and return how it differs from the previous revision."""
        snapshot = copy.deepcopy(obj)
        with self._lock:
            previous = self._objects.get(identity)
            self._objects[identity] = snapshot
        return classify_change(previous, snapshot)

    def remove(self, identity: ResourceIdentity) -> None:
        with self._lock:
            self._objects.pop(identity, None)

    def identities(self) -> set[ResourceIdentity]:
        with self._lock:
            return set(self._objects)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
