from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from reconciler.src.leader import default_identity


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_namespaces(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated namespace list; empty means every namespace."""
    if not raw:
        return ()
    return tuple(dict.fromkeys(part.strip() for part in raw.split(",") if part.strip()))


@dataclass(frozen=True)
class ResourceManagerOptions:
    """Per-controller tuning for watch scope, concurrency and retry timing.

    Attributes:
        namespaces: Namespaces to watch.  Empty watches the whole cluster.
        label_selector: Optional label selector applied to list and watch.
        field_selector: Optional field selector applied to list and watch.
        auto_register_finalizers: Patch finalizer names onto new objects
            before the first reconcile.
        max_concurrent_reconciles: Worker pool size.  Distinct identities
            reconcile in parallel up to this bound.
        error_min_requeue_seconds: Base delay for the default error policy.
        error_max_requeue_seconds: Cap for the default error policy.
        leader_election: Hold events until this replica holds the lease.
        lease_name: Lease object name; derived from the resource when unset.
    """

    namespaces: tuple[str, ...] = ()
    label_selector: str | None = None
    field_selector: str | None = None
    auto_register_finalizers: bool = True
    max_concurrent_reconciles: int = 1
    error_min_requeue_seconds: float = 10
    error_max_requeue_seconds: float = 600
    watch_retry_max_seconds: float = 30
    watch_timeout_seconds: int = 300
    leader_election: bool = True
    lease_name: str | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be >= 1")
        if self.error_min_requeue_seconds < 0:
            raise ValueError("error_min_requeue_seconds must be >= 0")
        if self.error_max_requeue_seconds < self.error_min_requeue_seconds:
            raise ValueError(
                "error_max_requeue_seconds must not be smaller than error_min_requeue_seconds"
            )
        if self.watch_retry_max_seconds < 1:
            raise ValueError("watch_retry_max_seconds must be >= 1")
        if self.watch_timeout_seconds < 1:
            raise ValueError("watch_timeout_seconds must be >= 1")


@dataclass(frozen=True)
class OperatorSettings:
    """Process-wide operator configuration loaded once at startup."""

    name: str = "operator"
    pod_namespace: str = "default"
    watch_namespaces: tuple[str, ...] = ()
    health_port: int = 8080
    webhook_port: int = 8443
    webhook_tls_cert_file: str | None = None
    webhook_tls_key_file: str | None = None
    webhook_url: str | None = None
    cert_manager_enabled: bool = True
    manage_webhook_configurations: bool = True
    leader_election_enabled: bool = True
    leader_election_identity: str = field(default_factory=default_identity)
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    max_concurrent_reconciles: int = 1
    error_min_requeue_seconds: int = 10
    error_max_requeue_seconds: int = 600
    watch_retry_max_seconds: int = 30
    watch_timeout_seconds: int = 300
    auto_register_finalizers: bool = True
    entrypoint: str | None = None
    log_level: str = "INFO"

    def manager_options(self, **overrides: Any) -> ResourceManagerOptions:
        """Return controller options seeded from these settings."""
        options = ResourceManagerOptions(
            namespaces=self.watch_namespaces,
            auto_register_finalizers=self.auto_register_finalizers,
            max_concurrent_reconciles=self.max_concurrent_reconciles,
            error_min_requeue_seconds=self.error_min_requeue_seconds,
            error_max_requeue_seconds=self.error_max_requeue_seconds,
            watch_retry_max_seconds=self.watch_retry_max_seconds,
            watch_timeout_seconds=self.watch_timeout_seconds,
            leader_election=self.leader_election_enabled,
        )
        return replace(options, **overrides) if overrides else options


def load_settings(env: Mapping[str, str] | None = None) -> OperatorSettings:
    """Load :class:`OperatorSettings` from the environment.

    Integer values are bounds-checked by :func:`env_int` and raise
    ``ValueError``.  Inconsistent combinations raise :class:`ConfigError`.
    """
    values = env if env is not None else os.environ

    name = values.get("OPERATOR_NAME", "operator").strip()
    if not name:
        raise ConfigError("OPERATOR_NAME must be a non-empty string")
    pod_namespace = values.get("POD_NAMESPACE", "default").strip()
    if not pod_namespace:
        raise ConfigError("POD_NAMESPACE must be a non-empty string")

    lease_duration_seconds = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline_seconds = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period_seconds = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    error_min = env_int("ERROR_MIN_REQUEUE_SECONDS", 10, minimum=0, env=values)
    error_max = env_int("ERROR_MAX_REQUEUE_SECONDS", 600, minimum=0, env=values)
    if error_max < error_min:
        raise ConfigError(
            "ERROR_MAX_REQUEUE_SECONDS must not be smaller than ERROR_MIN_REQUEUE_SECONDS"
        )

    cert_file = values.get("WEBHOOK_TLS_CERT_FILE") or None
    key_file = values.get("WEBHOOK_TLS_KEY_FILE") or None
    if (cert_file is None) != (key_file is None):
        raise ConfigError("WEBHOOK_TLS_CERT_FILE and WEBHOOK_TLS_KEY_FILE must be set together")

    return OperatorSettings(
        name=name,
        pod_namespace=pod_namespace,
        watch_namespaces=parse_namespaces(values.get("WATCH_NAMESPACE")),
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values),
        webhook_port=env_int("WEBHOOK_PORT", 8443, minimum=0, maximum=65535, env=values),
        webhook_tls_cert_file=cert_file,
        webhook_tls_key_file=key_file,
        webhook_url=values.get("WEBHOOK_URL") or None,
        cert_manager_enabled=parse_bool(values.get("CERT_MANAGER_ENABLED"), default=True),
        manage_webhook_configurations=parse_bool(
            values.get("MANAGE_WEBHOOK_CONFIGURATIONS"), default=True
        ),
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        leader_election_identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        max_concurrent_reconciles=env_int("MAX_CONCURRENT_RECONCILES", 1, minimum=1, env=values),
        error_min_requeue_seconds=error_min,
        error_max_requeue_seconds=error_max,
        watch_retry_max_seconds=env_int("WATCH_RETRY_MAX_SECONDS", 30, minimum=1, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        auto_register_finalizers=parse_bool(values.get("AUTO_REGISTER_FINALIZERS"), default=True),
        entrypoint=values.get("OPERATOR_ENTRYPOINT") or None,
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
