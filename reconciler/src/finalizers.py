from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from reconciler.src.kube import ClusterApiError, ConflictError, NotFoundError, ResourceClient
from reconciler.src.metrics import METRICS
from reconciler.src.resources import finalizers_of, object_metadata

LOGGER = logging.getLogger(__name__)

MAX_FINALIZER_NAME_LENGTH = 63
_PATCH_ATTEMPTS = 3


class ResourceFinalizer:
    """Cleanup hook that blocks deletion until :meth:`finalize` succeeds.

    Set ``identifier`` to pin the finalizer name; otherwise it is derived
    from the resource group and the class name.
    """

    identifier: str | None = None

    def finalize(self, entity: dict[str, Any]) -> None:
        raise NotImplementedError


def finalizer_name(finalizer: ResourceFinalizer, group: str) -> str:
    if finalizer.identifier:
        if len(finalizer.identifier) > MAX_FINALIZER_NAME_LENGTH:
            raise ValueError(
                f"Finalizer identifier {finalizer.identifier!r} exceeds "
                f"{MAX_FINALIZER_NAME_LENGTH} characters"
            )
        return finalizer.identifier
    class_name = type(finalizer).__name__.lower()
    name = f"{group}/{class_name}" if group else class_name
    return name[:MAX_FINALIZER_NAME_LENGTH]


class FinalizationError(Exception):
    """A finalizer failed; ``entity`` reflects the finalizers already removed."""

    def __init__(self, finalizer: str, entity: dict[str, Any], error: Exception) -> None:
        super().__init__(f"Finalizer {finalizer} failed: {error}")
        self.finalizer = finalizer
        self.entity = entity
        self.error = error


def _is_patch_conflict(exc: ClusterApiError) -> bool:
    # A failed JSON patch ``test`` operation comes back as 422.
    return isinstance(exc, ConflictError) or exc.status == 422


class FinalizerManager:
    """Adds, runs and removes the finalizers registered for one controller.

    Finalizer names live in ``metadata.finalizers``.  Every write is a JSON
    patch guarded by a ``test`` of the list the change was computed from,
    so concurrent writers never lose each other's entries; a failed test
    re-reads the object and retries.
    """

    def __init__(
        self,
        client: ResourceClient,
        finalizers: Sequence[ResourceFinalizer] = (),
        controller_name: str | None = None,
    ) -> None:
        self.client = client
        self.controller_name = controller_name or str(client.resource)
        self._finalizers: list[tuple[str, ResourceFinalizer]] = []
        for finalizer in finalizers:
            self.register(finalizer)

    def register(self, finalizer: ResourceFinalizer) -> str:
        name = finalizer_name(finalizer, self.client.resource.group)
        if name in self.names:
            raise ValueError(f"Finalizer {name!r} is already registered")
        self._finalizers.append((name, finalizer))
        return name

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._finalizers]

    def __bool__(self) -> bool:
        return bool(self._finalizers)

    def pending(self, entity: dict[str, Any]) -> list[tuple[str, ResourceFinalizer]]:
        """Registered finalizers still present on ``entity``, in registration order."""
        present = set(finalizers_of(entity))
        return [(name, finalizer) for name, finalizer in self._finalizers if name in present]

    def _update_finalizers(
        self,
        entity: dict[str, Any],
        change: Callable[[list[str]], list[str]],
    ) -> dict[str, Any]:
        metadata = object_metadata(entity)
        name = metadata.get("name", "")
        namespace = metadata.get("namespace")
        current_obj = entity
        for attempt in range(1, _PATCH_ATTEMPTS + 1):
            current = finalizers_of(current_obj)
            desired = change(current)
            if desired == current:
                return current_obj
            has_list = isinstance(object_metadata(current_obj).get("finalizers"), list)
            operations: list[dict[str, Any]] = []
            if has_list:
                operations.append({"op": "test", "path": "/metadata/finalizers", "value": current})
            operations.append(
                {
                    "op": "replace" if has_list else "add",
                    "path": "/metadata/finalizers",
                    "value": desired,
                }
            )
            try:
                return self.client.patch_json(name, operations, namespace=namespace)
            except ClusterApiError as exc:
                if isinstance(exc, NotFoundError) or not _is_patch_conflict(exc):
                    raise
                if attempt == _PATCH_ATTEMPTS:
                    raise
                LOGGER.debug("Finalizer patch on %s raced another writer, re-reading", name)
                current_obj = self.client.get(name, namespace=namespace)
        return current_obj

    def register_all(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Ensure every registered finalizer name is on ``entity``; idempotent."""
        names = self.names
        if not names:
            return entity

        def add_missing(current: list[str]) -> list[str]:
            return current + [name for name in names if name not in current]

        updated = self._update_finalizers(entity, add_missing)
        if updated is not entity:
            LOGGER.info(
                "Registered finalizers on %s: %s",
                object_metadata(entity).get("name"),
                ", ".join(finalizers_of(updated)),
            )
        return updated

    def remove_finalizer(self, entity: dict[str, Any], name: str) -> dict[str, Any] | None:
        """Remove one finalizer name.  Returns ``None`` when the object is already gone."""

        def without(current: list[str]) -> list[str]:
            return [existing for existing in current if existing != name]

        metadata = entity.setdefault("metadata", {})
        try:
            updated = self._update_finalizers(entity, without)
        except NotFoundError:
            LOGGER.debug("Object %s already gone while removing %s", metadata.get("name"), name)
            updated = None
        if isinstance(metadata.get("finalizers"), list):
            metadata["finalizers"] = without(metadata["finalizers"])
        LOGGER.info("Removed finalizer %s from %s", name, metadata.get("name"))
        return updated

    def finalize(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Run pending finalizers in registration order, removing each after it succeeds.

        The first failure raises :class:`FinalizationError`, which carries the
        object as last written so a retry starts at the failed finalizer.  It
        and every later finalizer stay in place for the next attempt.
        """
        current = entity
        for name, finalizer in self.pending(entity):
            try:
                finalizer.finalize(current)
            except Exception as exc:
                METRICS.finalize_total.labels(
                    controller=self.controller_name, finalizer=name, outcome="error"
                ).inc()
                raise FinalizationError(name, current, exc) from exc
            METRICS.finalize_total.labels(
                controller=self.controller_name, finalizer=name, outcome="success"
            ).inc()
            try:
                updated = self.remove_finalizer(current, name)
            except Exception as exc:
                raise FinalizationError(name, current, exc) from exc
            if updated is not None:
                current = updated
        return current
