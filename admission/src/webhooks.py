from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, ClassVar

import jsonpatch

from admission.src.models import (
    JSON_PATCH,
    AdmissionOperation,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionResult,
    FailurePolicy,
    MatchPolicy,
    MutationResult,
    ReinvocationPolicy,
    SideEffects,
    ValidationResult,
)
from reconciler.src.resources import ResourceType

# Status code reported for a denial that did not set one.
DEFAULT_DENIED_STATUS_CODE = 403


@dataclass(frozen=True)
class WebhookRule:
    api_groups: tuple[str, ...]
    api_versions: tuple[str, ...]
    operations: tuple[AdmissionOperation, ...]
    resources: tuple[str, ...]
    scope: str = "*"

    @classmethod
    def for_resource(
        cls,
        resource: ResourceType,
        operations: tuple[AdmissionOperation, ...] = (
            AdmissionOperation.CREATE,
            AdmissionOperation.UPDATE,
        ),
    ) -> WebhookRule:
        return cls(
            api_groups=(resource.group,),
            api_versions=(resource.version,),
            operations=operations,
            resources=(resource.plural,),
            scope="Namespaced" if resource.namespaced else "Cluster",
        )


@dataclass(frozen=True)
class WebhookSettings:
    """Registration settings; the same fields are honoured while serving requests."""

    failure_policy: FailurePolicy = FailurePolicy.FAIL
    side_effects: SideEffects = SideEffects.NONE
    timeout_seconds: int = 10
    match_policy: MatchPolicy = MatchPolicy.EQUIVALENT
    reinvocation_policy: ReinvocationPolicy = ReinvocationPolicy.NEVER
    admission_review_versions: tuple[str, ...] = ("v1",)
    namespace_selector: dict[str, Any] | None = None
    object_selector: dict[str, Any] | None = None
    rules: tuple[WebhookRule, ...] = ()

    def __post_init__(self) -> None:
        # The API server rejects webhook timeouts outside 1..30 seconds.
        if not 1 <= self.timeout_seconds <= 30:
            raise ValueError("timeout_seconds must be between 1 and 30")
        if not self.admission_review_versions:
            raise ValueError("admission_review_versions must not be empty")


class AdmissionWebhook:
    """Common surface of mutating and validating webhooks.

    Subclasses set ``resource`` (or pass it to ``__init__``) and override
    ``create``, ``update`` and ``delete``.  Objects are plain dicts.
    """

    webhook_type: ClassVar[str] = ""
    resource: ResourceType
    settings: WebhookSettings = WebhookSettings()

    def __init__(
        self,
        resource: ResourceType | None = None,
        settings: WebhookSettings | None = None,
    ) -> None:
        if resource is not None:
            self.resource = resource
        if settings is not None:
            self.settings = settings
        if getattr(self, "resource", None) is None:
            raise ValueError(f"{type(self).__name__} has no resource type")

    @property
    def name(self) -> str:
        cls = type(self)
        return f"{cls.__module__}.{self.resource.kind}.{cls.__name__}".lower()

    @property
    def endpoint(self) -> str:
        resource = self.resource
        group = resource.group or "core"
        path = f"/{group}/{resource.version}/{resource.plural}/{type(self).__name__}/{self.webhook_type}"
        return path.lower()

    @property
    def rules(self) -> tuple[WebhookRule, ...]:
        return self.settings.rules or (WebhookRule.for_resource(self.resource),)

    def skipped(self) -> AdmissionResult:
        """Result used when the selectors exclude the request."""
        raise NotImplementedError

    def create(self, entity: dict[str, Any], dry_run: bool) -> AdmissionResult:
        raise NotImplementedError

    def update(
        self, old_entity: dict[str, Any], new_entity: dict[str, Any], dry_run: bool
    ) -> AdmissionResult:
        raise NotImplementedError

    def delete(self, old_entity: dict[str, Any], dry_run: bool) -> AdmissionResult:
        raise NotImplementedError

    def transform(self, result: AdmissionResult, request: AdmissionRequest) -> AdmissionResponse:
        raise NotImplementedError


class ValidatingWebhook(AdmissionWebhook):
    """Accepts or rejects requests; never patches.  Unimplemented operations succeed."""

    webhook_type = "validate"

    def skipped(self) -> ValidationResult:
        return ValidationResult.success()

    def create(self, entity: dict[str, Any], dry_run: bool) -> ValidationResult:
        return ValidationResult.success()

    def update(
        self, old_entity: dict[str, Any], new_entity: dict[str, Any], dry_run: bool
    ) -> ValidationResult:
        return ValidationResult.success()

    def delete(self, old_entity: dict[str, Any], dry_run: bool) -> ValidationResult:
        return ValidationResult.success()

    def transform(self, result: AdmissionResult, request: AdmissionRequest) -> AdmissionResponse:
        status: dict[str, Any] | None = None
        if not result.valid:
            status = {"code": result.status_code or DEFAULT_DENIED_STATUS_CODE}
            if result.status_message is not None:
                status["message"] = result.status_message
        elif result.status_message is not None:
            status = {"code": result.status_code or 200, "message": result.status_message}
        return AdmissionResponse(
            uid=request.uid,
            allowed=result.valid,
            status=status,
            warnings=tuple(result.warnings),
        )


class MutatingWebhook(AdmissionWebhook):
    """Patches requests by returning a modified copy of the object.

    Implementations registered with ``ReinvocationPolicy.IF_NEEDED`` may see
    their own output again and must answer ``no_changes`` for it.
    """

    webhook_type = "mutate"

    def skipped(self) -> MutationResult:
        return MutationResult.no_changes()

    def create(self, entity: dict[str, Any], dry_run: bool) -> MutationResult:
        return MutationResult.no_changes()

    def update(
        self, old_entity: dict[str, Any], new_entity: dict[str, Any], dry_run: bool
    ) -> MutationResult:
        return MutationResult.no_changes()

    def delete(self, old_entity: dict[str, Any], dry_run: bool) -> MutationResult:
        return MutationResult.no_changes()

    def transform(self, result: AdmissionResult, request: AdmissionRequest) -> AdmissionResponse:
        status: dict[str, Any] | None = None
        if result.status_message is not None:
            status = {"code": result.status_code or 200, "message": result.status_message}
        modified = getattr(result, "modified_object", None)
        if modified is None:
            return AdmissionResponse(
                uid=request.uid,
                allowed=True,
                status=status,
                warnings=tuple(result.warnings),
            )

        original = (
            request.old_object
            if request.operation is AdmissionOperation.DELETE
            else request.object
        )
        operations = jsonpatch.make_patch(original or {}, modified).patch
        encoded = base64.b64encode(json.dumps(operations).encode("utf-8")).decode("ascii")
        return AdmissionResponse(
            uid=request.uid,
            allowed=result.valid,
            status=status,
            warnings=tuple(result.warnings),
            patch_type=JSON_PATCH,
            patch=encoded,
        )
