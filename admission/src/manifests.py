from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from kubernetes.client import (
    AdmissionregistrationV1Api,
    AdmissionregistrationV1ServiceReference,
    AdmissionregistrationV1WebhookClientConfig,
    V1LabelSelector,
    V1LabelSelectorRequirement,
    V1MutatingWebhook,
    V1MutatingWebhookConfiguration,
    V1ObjectMeta,
    V1RuleWithOperations,
    V1ValidatingWebhook,
    V1ValidatingWebhookConfiguration,
)
from kubernetes.client.exceptions import ApiException

from admission.src.webhooks import AdmissionWebhook, MutatingWebhook
from reconciler.src.config import OperatorSettings

LOGGER = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admissionregistration.k8s.io/v1"
CERT_MANAGER_ANNOTATION = "cert-manager.io/inject-ca-from"

WebhookConfiguration = V1MutatingWebhookConfiguration | V1ValidatingWebhookConfiguration


def _label_selector(selector: dict[str, Any] | None) -> V1LabelSelector | None:
    if selector is None:
        return None
    return V1LabelSelector(
        match_labels=selector.get("matchLabels") or None,
        match_expressions=[
            V1LabelSelectorRequirement(
                key=expression["key"],
                operator=expression["operator"],
                values=expression.get("values"),
            )
            for expression in selector.get("matchExpressions") or []
        ]
        or None,
    )


def _client_config(
    webhook: AdmissionWebhook, settings: OperatorSettings
) -> AdmissionregistrationV1WebhookClientConfig:
    if settings.webhook_url:
        return AdmissionregistrationV1WebhookClientConfig(
            url=settings.webhook_url.rstrip("/") + webhook.endpoint
        )
    return AdmissionregistrationV1WebhookClientConfig(
        service=AdmissionregistrationV1ServiceReference(
            name=settings.name,
            namespace=settings.pod_namespace,
            path=webhook.endpoint,
        )
    )


def build_webhook_configuration(
    webhook: AdmissionWebhook, settings: OperatorSettings
) -> WebhookConfiguration:
    """Build the registration object the API server uses to call ``webhook``.

    A ``WEBHOOK_URL`` replaces the in-cluster service reference (development
    tunnels); otherwise cert-manager is asked to inject the serving CA.
    """
    hook = webhook.settings
    rules = [
        V1RuleWithOperations(
            api_groups=list(rule.api_groups),
            api_versions=list(rule.api_versions),
            operations=[operation.value for operation in rule.operations],
            resources=list(rule.resources),
            scope=rule.scope,
        )
        for rule in webhook.rules
    ]
    annotations = None
    if settings.cert_manager_enabled and not settings.webhook_url:
        annotations = {CERT_MANAGER_ANNOTATION: f"{settings.pod_namespace}/{settings.name}"}
    metadata = V1ObjectMeta(
        name=webhook.name,
        annotations=annotations,
        labels={"app.kubernetes.io/managed-by": settings.name},
    )
    common: dict[str, Any] = {
        "name": webhook.name,
        "rules": rules,
        "client_config": _client_config(webhook, settings),
        "admission_review_versions": list(hook.admission_review_versions),
        "failure_policy": hook.failure_policy.value,
        "side_effects": hook.side_effects.value,
        "timeout_seconds": hook.timeout_seconds,
        "match_policy": hook.match_policy.value,
        "namespace_selector": _label_selector(hook.namespace_selector),
        "object_selector": _label_selector(hook.object_selector),
    }
    if isinstance(webhook, MutatingWebhook):
        return V1MutatingWebhookConfiguration(
            api_version=ADMISSION_API_VERSION,
            kind="MutatingWebhookConfiguration",
            metadata=metadata,
            webhooks=[
                V1MutatingWebhook(reinvocation_policy=hook.reinvocation_policy.value, **common)
            ],
        )
    return V1ValidatingWebhookConfiguration(
        api_version=ADMISSION_API_VERSION,
        kind="ValidatingWebhookConfiguration",
        metadata=metadata,
        webhooks=[V1ValidatingWebhook(**common)],
    )


def ensure_webhook_configuration(
    admission_api: AdmissionregistrationV1Api, configuration: WebhookConfiguration
) -> None:
    """Create or replace one webhook configuration object."""
    name = configuration.metadata.name
    if isinstance(configuration, V1MutatingWebhookConfiguration):
        read = admission_api.read_mutating_webhook_configuration
        replace = admission_api.replace_mutating_webhook_configuration
        create = admission_api.create_mutating_webhook_configuration
    else:
        read = admission_api.read_validating_webhook_configuration
        replace = admission_api.replace_validating_webhook_configuration
        create = admission_api.create_validating_webhook_configuration

    try:
        existing = read(name=name)
    except ApiException as exc:
        if exc.status != 404:
            raise
        create(body=configuration)
        LOGGER.info("Created %s %s", configuration.kind, name)
        return

    existing.webhooks = configuration.webhooks
    existing.metadata.annotations = configuration.metadata.annotations
    existing.metadata.labels = configuration.metadata.labels
    replace(name=name, body=existing)
    LOGGER.info("Updated %s %s", configuration.kind, name)


def register_webhooks(
    admission_api: AdmissionregistrationV1Api,
    webhooks: Iterable[AdmissionWebhook],
    settings: OperatorSettings,
) -> list[WebhookConfiguration]:
    configurations = [build_webhook_configuration(webhook, settings) for webhook in webhooks]
    for configuration in configurations:
        ensure_webhook_configuration(admission_api, configuration)
    return configurations
