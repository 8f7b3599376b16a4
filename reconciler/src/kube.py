from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    AdmissionregistrationV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from reconciler.src.resources import ResourceType

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"
JSON_PATCH = "application/json-patch+json"


class ClusterApiError(RuntimeError):
    """An API server call failed; ``status`` carries the HTTP status when known."""

    def __init__(self, message: str, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class NotFoundError(ClusterApiError):
    pass


class ConflictError(ClusterApiError):
    pass


class GoneError(ClusterApiError):
    """The requested resource version is older than the server retains."""


class AccessDeniedError(ClusterApiError):
    """401 or 403: the service account lacks credentials or RBAC rules."""


_ERRORS_BY_STATUS: dict[int, type[ClusterApiError]] = {
    401: AccessDeniedError,
    403: AccessDeniedError,
    404: NotFoundError,
    409: ConflictError,
    410: GoneError,
}


def translate_api_exception(exc: ApiException) -> ClusterApiError:
    """Map a client ``ApiException`` onto the typed :class:`ClusterApiError` family."""
    error_class = _ERRORS_BY_STATUS.get(exc.status or 0, ClusterApiError)
    return error_class(
        f"Kubernetes API error (status={exc.status}, reason={exc.reason})",
        status=exc.status,
        reason=exc.reason,
    )


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    custom_objects: CustomObjectsApi
    coordination: CoordinationV1Api
    admission: AdmissionregistrationV1Api
    core: CoreV1Api


def build_clients() -> KubeClients:
    """Return the API clients the operator needs using the active kube configuration."""
    return KubeClients(
        custom_objects=client.CustomObjectsApi(),
        coordination=client.CoordinationV1Api(),
        admission=client.AdmissionregistrationV1Api(),
        core=client.CoreV1Api(),
    )


class ResourceClient:
    """Typed transport for one custom resource type.

    Objects travel as plain dicts, the shape the custom objects API returns.
    Every call raises a :class:`ClusterApiError` subclass instead of the raw
    ``ApiException`` so callers can branch on not-found, conflict and gone.
    Namespaced resources listed or watched without a namespace span the
    whole cluster.
    """

    def __init__(self, api: CustomObjectsApi, resource: ResourceType) -> None:
        self.api = api
        self.resource = resource

    def _coordinates(self) -> dict[str, str]:
        return {
            "group": self.resource.group,
            "version": self.resource.version,
            "plural": self.resource.plural,
        }

    def _require_namespace(self, namespace: str | None) -> str | None:
        if self.resource.namespaced and not namespace:
            raise ValueError(f"{self.resource} is namespaced; a namespace is required")
        return namespace if self.resource.namespaced else None

    @staticmethod
    def _call(func: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return func(**kwargs)
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    @staticmethod
    def _selectors(label_selector: str | None, field_selector: str | None) -> dict[str, str]:
        selectors: dict[str, str] = {}
        if label_selector:
            selectors["label_selector"] = label_selector
        if field_selector:
            selectors["field_selector"] = field_selector
        return selectors

    def list_target(
        self,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and kwargs, usable directly by ``watch.Watch().stream``."""
        kwargs: dict[str, Any] = {
            **self._coordinates(),
            **self._selectors(label_selector, field_selector),
        }
        if self.resource.namespaced and namespace:
            kwargs["namespace"] = namespace
            return self.api.list_namespaced_custom_object, kwargs
        return self.api.list_cluster_custom_object, kwargs

    def list(
        self,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List objects and return them with the collection's resourceVersion."""
        func, kwargs = self.list_target(namespace, label_selector, field_selector)
        response = self._call(func, **kwargs) or {}
        items = [item for item in response.get("items") or [] if isinstance(item, dict)]
        resource_version = (response.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        namespace = self._require_namespace(namespace)
        if namespace:
            return self._call(
                self.api.get_namespaced_custom_object,
                namespace=namespace,
                name=name,
                **self._coordinates(),
            )
        return self._call(self.api.get_cluster_custom_object, name=name, **self._coordinates())

    def create(self, body: dict[str, Any], namespace: str | None = None) -> dict[str, Any]:
        namespace = self._require_namespace(namespace)
        if namespace:
            return self._call(
                self.api.create_namespaced_custom_object,
                namespace=namespace,
                body=body,
                **self._coordinates(),
            )
        return self._call(self.api.create_cluster_custom_object, body=body, **self._coordinates())

    def replace(
        self, name: str, body: dict[str, Any], namespace: str | None = None
    ) -> dict[str, Any]:
        namespace = self._require_namespace(namespace)
        if namespace:
            return self._call(
                self.api.replace_namespaced_custom_object,
                namespace=namespace,
                name=name,
                body=body,
                **self._coordinates(),
            )
        return self._call(
            self.api.replace_cluster_custom_object,
            name=name,
            body=body,
            **self._coordinates(),
        )

    def _patch(
        self, name: str, body: Any, namespace: str | None, content_type: str
    ) -> dict[str, Any]:
        namespace = self._require_namespace(namespace)
        if namespace:
            return self._call(
                self.api.patch_namespaced_custom_object,
                namespace=namespace,
                name=name,
                body=body,
                _content_type=content_type,
                **self._coordinates(),
            )
        return self._call(
            self.api.patch_cluster_custom_object,
            name=name,
            body=body,
            _content_type=content_type,
            **self._coordinates(),
        )

    def patch_merge(
        self, name: str, patch: dict[str, Any], namespace: str | None = None
    ) -> dict[str, Any]:
        return self._patch(name, patch, namespace, MERGE_PATCH)

    def patch_json(
        self, name: str, operations: list[dict[str, Any]], namespace: str | None = None
    ) -> dict[str, Any]:
        return self._patch(name, operations, namespace, JSON_PATCH)

    def delete(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        namespace = self._require_namespace(namespace)
        if namespace:
            return self._call(
                self.api.delete_namespaced_custom_object,
                namespace=namespace,
                name=name,
                **self._coordinates(),
            )
        return self._call(self.api.delete_cluster_custom_object, name=name, **self._coordinates())
