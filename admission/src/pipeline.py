from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from admission.src.models import (
    AdmissionOperation,
    AdmissionRequest,
    AdmissionResult,
    AdmissionReviewError,
)
from admission.src.selectors import matches_label_selector
from admission.src.webhooks import AdmissionWebhook

LOGGER = logging.getLogger(__name__)

NamespaceLabelLookup = Callable[[str], Mapping[str, str] | None]


class AdmissionTimeoutError(TimeoutError):
    """The webhook callback did not finish within ``timeout_seconds``."""


def _labels(obj: Mapping[str, Any] | None) -> dict[str, str]:
    metadata = (obj or {}).get("metadata") or {}
    return dict(metadata.get("labels") or {})


class AdmissionPipeline:
    """Synchronous request path for one webhook: parse, select, dispatch, transform.

    Exceptions raised by the webhook propagate to the HTTP layer.  A
    callback still running when ``timeout_seconds`` elapses is abandoned
    (the thread cannot be interrupted) and :class:`AdmissionTimeoutError`
    is raised so the API server can apply the failure policy.
    """

    def __init__(
        self,
        webhook: AdmissionWebhook,
        executor: ThreadPoolExecutor,
        namespace_labels: NamespaceLabelLookup | None = None,
    ) -> None:
        self.webhook = webhook
        self.executor = executor
        self.namespace_labels = namespace_labels

    def _selected(self, request: AdmissionRequest) -> bool:
        settings = self.webhook.settings
        subject = request.object if request.object is not None else request.old_object
        if not matches_label_selector(settings.object_selector, _labels(subject)):
            return False
        if settings.namespace_selector is None:
            return True
        if request.kind.get("kind") == "Namespace" and not request.kind.get("group"):
            return matches_label_selector(settings.namespace_selector, _labels(subject))
        if not request.namespace:
            # Cluster-scoped objects are not subject to namespaceSelector.
            return True
        if self.namespace_labels is None:
            LOGGER.warning(
                "No namespace lookup configured; %s skips namespaceSelector", self.webhook.name
            )
            return True
        return matches_label_selector(
            settings.namespace_selector, self.namespace_labels(request.namespace) or {}
        )

    def dispatch(self, request: AdmissionRequest) -> AdmissionResult:
        webhook = self.webhook
        if request.operation is AdmissionOperation.CREATE:
            if request.object is None:
                raise AdmissionReviewError("CREATE request carries no object")
            return webhook.create(request.object, request.dry_run)
        if request.operation is AdmissionOperation.UPDATE:
            if request.object is None or request.old_object is None:
                raise AdmissionReviewError("UPDATE request needs object and oldObject")
            return webhook.update(request.old_object, request.object, request.dry_run)
        if request.operation is AdmissionOperation.DELETE:
            if request.old_object is None:
                raise AdmissionReviewError("DELETE request carries no oldObject")
            return webhook.delete(request.old_object, request.dry_run)
        LOGGER.debug("%s does not handle %s", webhook.name, request.operation.value)
        return webhook.skipped()

    def handle(self, review: Mapping[str, Any]) -> dict[str, Any]:
        """Process an AdmissionReview body and return the AdmissionReview response body."""
        request = AdmissionRequest.from_review(review)
        if self._selected(request):
            future = self.executor.submit(self.dispatch, request)
            timeout = self.webhook.settings.timeout_seconds
            try:
                result = future.result(timeout=timeout)
            except TimeoutError as exc:
                if future.done():
                    raise
                future.cancel()
                raise AdmissionTimeoutError(
                    f"{self.webhook.name} did not answer within {timeout}s"
                ) from exc
        else:
            LOGGER.debug("Request %s excluded by selectors of %s", request.uid, self.webhook.name)
            result = self.webhook.skipped()

        response = self.webhook.transform(result, request)
        LOGGER.debug(
            "%s %s %s/%s allowed=%s",
            self.webhook.name,
            request.operation.value,
            request.namespace or "-",
            request.name or "-",
            response.allowed,
        )
        return response.to_review(api_version=review.get("apiVersion"))
