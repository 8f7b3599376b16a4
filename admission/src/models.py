from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Self

REVIEW_API_VERSION = "admission.k8s.io/v1"
JSON_PATCH = "JSONPatch"


class AdmissionOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class FailurePolicy(str, Enum):
    IGNORE = "Ignore"
    FAIL = "Fail"


class MatchPolicy(str, Enum):
    EXACT = "Exact"
    EQUIVALENT = "Equivalent"


class SideEffects(str, Enum):
    NONE = "None"
    NONE_ON_DRY_RUN = "NoneOnDryRun"


class ReinvocationPolicy(str, Enum):
    NEVER = "Never"
    IF_NEEDED = "IfNeeded"


class AdmissionReviewError(ValueError):
    """The AdmissionReview body is malformed."""


@dataclass(frozen=True)
class AdmissionRequest:
    """The ``request`` stanza of an AdmissionReview, with objects as plain dicts."""

    uid: str
    operation: AdmissionOperation
    object: dict[str, Any] | None = None
    old_object: dict[str, Any] | None = None
    dry_run: bool = False
    namespace: str | None = None
    name: str | None = None
    kind: dict[str, Any] = field(default_factory=dict)
    user_info: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_review(cls, review: Mapping[str, Any]) -> AdmissionRequest:
        request = review.get("request") if isinstance(review, Mapping) else None
        if not isinstance(request, Mapping):
            raise AdmissionReviewError("AdmissionReview has no request")
        uid = request.get("uid")
        if not uid or not isinstance(uid, str):
            raise AdmissionReviewError("AdmissionReview request has no uid")
        try:
            operation = AdmissionOperation(request.get("operation"))
        except ValueError as exc:
            raise AdmissionReviewError(
                f"Unsupported admission operation {request.get('operation')!r}"
            ) from exc
        obj = request.get("object")
        old_obj = request.get("oldObject")
        return cls(
            uid=uid,
            operation=operation,
            object=obj if isinstance(obj, dict) else None,
            old_object=old_obj if isinstance(old_obj, dict) else None,
            dry_run=bool(request.get("dryRun", False)),
            namespace=request.get("namespace") or None,
            name=request.get("name") or None,
            kind=dict(request.get("kind") or {}),
            user_info=dict(request.get("userInfo") or {}),
        )


@dataclass
class AdmissionResult:
    valid: bool = True
    status_code: int | None = None
    status_message: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def not_implemented(cls) -> Self:
        return cls(
            valid=False,
            status_code=501,
            status_message="The method is not implemented.",
        )


@dataclass
class ValidationResult(AdmissionResult):
    @classmethod
    def success(cls, *warnings: str) -> ValidationResult:
        return cls(valid=True, status_code=200, warnings=list(warnings))

    @classmethod
    def fail(cls, status_code: int | None = None, status_message: str | None = None) -> ValidationResult:
        return cls(valid=False, status_code=status_code, status_message=status_message)


@dataclass
class MutationResult(AdmissionResult):
    """A mutation outcome; ``modified_object`` of ``None`` always means no changes."""

    modified_object: dict[str, Any] | None = None

    @classmethod
    def no_changes(cls, status_code: int = 200, status_message: str | None = None) -> MutationResult:
        return cls(valid=True, status_code=status_code, status_message=status_message)

    @classmethod
    def modified(cls, modified_object: dict[str, Any], *warnings: str) -> MutationResult:
        return cls(modified_object=modified_object, warnings=list(warnings))


@dataclass(frozen=True)
class AdmissionResponse:
    uid: str
    allowed: bool
    status: dict[str, Any] | None = None
    warnings: tuple[str, ...] = ()
    patch_type: str | None = None
    patch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if self.status is not None:
            body["status"] = self.status
        if self.warnings:
            body["warnings"] = list(self.warnings)
        if self.patch is not None:
            body["patchType"] = self.patch_type
            body["patch"] = self.patch
        return body

    def to_review(self, api_version: str | None = None) -> dict[str, Any]:
        return {
            "apiVersion": api_version or REVIEW_API_VERSION,
            "kind": "AdmissionReview",
            "response": self.to_dict(),
        }
