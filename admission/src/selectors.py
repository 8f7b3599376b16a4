from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class SelectorError(ValueError):
    """A label selector uses an unknown operator or is malformed."""


def _matches_expression(expression: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    key = expression.get("key")
    operator = expression.get("operator")
    values = expression.get("values") or []
    if not key:
        raise SelectorError("matchExpressions entry has no key")
    if operator == "In":
        return key in labels and labels[key] in values
    if operator == "NotIn":
        return key not in labels or labels[key] not in values
    if operator == "Exists":
        return key in labels
    if operator == "DoesNotExist":
        return key not in labels
    raise SelectorError(f"Unknown label selector operator {operator!r}")


def matches_label_selector(
    selector: Mapping[str, Any] | None, labels: Mapping[str, str] | None
) -> bool:
    """Evaluate a Kubernetes ``LabelSelector`` against a label map.

    ``None`` and the empty selector match everything; all ``matchLabels``
    pairs and all ``matchExpressions`` must hold.
    """
    if not selector:
        return True
    labels = labels or {}
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False
    return all(
        _matches_expression(expression, labels)
        for expression in selector.get("matchExpressions") or []
    )
