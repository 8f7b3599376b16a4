from __future__ import annotations

import importlib
import logging
import os
import signal
import threading
from collections.abc import Callable

from reconciler.src.config import ConfigError, OperatorSettings, load_settings
from reconciler.src.host import OperatorHost
from reconciler.src.kube import KubeClients, build_clients, load_kube_configuration
from reconciler.src.logs import configure_logging
from reconciler.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"

LOGGER = logging.getLogger(__name__)


def load_entrypoint(
    reference: str | None, settings: OperatorSettings, clients: KubeClients | None = None
) -> OperatorHost:
    """Resolve ``module:attribute`` to a configured :class:`OperatorHost`.

    The attribute is either a host instance or a callable taking
    ``(settings, clients)`` and returning one.  ``clients`` is None when the
    host is only inspected, for example to render webhook manifests.
    """
    if not reference:
        raise ConfigError("OPERATOR_ENTRYPOINT must be set to 'module:attribute'")
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"OPERATOR_ENTRYPOINT must look like 'module:attribute', got: {reference}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import operator module {module_name!r}: {exc}") from exc
    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigError(f"{module_name!r} has no attribute {attribute!r}") from exc

    if isinstance(target, OperatorHost):
        host = target
        host.settings = settings
        if clients is not None:
            host.clients = clients
        return host
    if callable(target):
        factory: Callable[[OperatorSettings, KubeClients | None], object] = target
        host = factory(settings, clients)
        if isinstance(host, OperatorHost):
            return host
    raise ConfigError(f"{reference} did not provide an OperatorHost")


def main() -> None:
    """Operator entrypoint: configure logging, load the operator, and run until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
    settings = load_settings()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "operator": settings.name,
        }
    )

    load_kube_configuration()
    clients = build_clients()
    host = load_entrypoint(settings.entrypoint, settings, clients)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    host.run(shutdown_event)


if __name__ == "__main__":
    main()
