from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from kubernetes.client.exceptions import ApiException

from admission.src.main import create_app, start_webhook_server
from admission.src.manifests import register_webhooks
from admission.src.webhooks import AdmissionWebhook
from reconciler.src.config import ConfigError, OperatorSettings, ResourceManagerOptions
from reconciler.src.controller import ResourceController
from reconciler.src.engine import ResourceManager
from reconciler.src.finalizers import FinalizerManager, ResourceFinalizer
from reconciler.src.health import start_health_server
from reconciler.src.kube import KubeClients, ResourceClient
from reconciler.src.leader import LeaderState, LeaseLeaderElector
from reconciler.src.resources import ResourceType

LOGGER = logging.getLogger(__name__)


@dataclass
class _ControllerRegistration:
    resource: ResourceType
    controller: ResourceController
    finalizers: Sequence[ResourceFinalizer] = ()
    options: ResourceManagerOptions | None = None
    lease_name: str | None = None
    name: str | None = None


@dataclass
class _ManagedController:
    manager: ResourceManager
    elector: LeaseLeaderElector | None = None
    threads: list[threading.Thread] = field(default_factory=list)


class OperatorHost:
    """Registry and process lifecycle for controllers and admission webhooks.

    Controllers and webhooks are registered up front; :meth:`run` builds a
    :class:`ResourceManager` per controller, campaigns for one lease per
    resource type, and serves the health and webhook endpoints until the
    shutdown event is set or a controller fails.
    """

    def __init__(
        self, settings: OperatorSettings | None = None, clients: KubeClients | None = None
    ) -> None:
        self.settings = settings or OperatorSettings()
        self.clients = clients
        self.registrations: list[_ControllerRegistration] = []
        self.webhooks: list[AdmissionWebhook] = []
        self.managers: list[ResourceManager] = []

    def add_controller(
        self,
        resource: ResourceType,
        controller: ResourceController,
        finalizers: Sequence[ResourceFinalizer] = (),
        options: ResourceManagerOptions | None = None,
        lease_name: str | None = None,
        name: str | None = None,
    ) -> OperatorHost:
        if any(registration.resource == resource for registration in self.registrations):
            raise ValueError(f"A controller for {resource} is already registered")
        self.registrations.append(
            _ControllerRegistration(
                resource=resource,
                controller=controller,
                finalizers=tuple(finalizers),
                options=options,
                lease_name=lease_name,
                name=name,
            )
        )
        return self

    def add_webhook(self, webhook: AdmissionWebhook) -> OperatorHost:
        if any(existing.endpoint == webhook.endpoint for existing in self.webhooks):
            raise ValueError(f"A webhook is already served on {webhook.endpoint}")
        self.webhooks.append(webhook)
        return self

    def lease_name_for(self, registration: _ControllerRegistration) -> str:
        if registration.lease_name:
            return registration.lease_name
        if registration.options is not None and registration.options.lease_name:
            return registration.options.lease_name
        return f"{self.settings.name}.{registration.resource.plural}".lower()

    def _require_clients(self) -> KubeClients:
        if self.clients is None:
            raise ConfigError("OperatorHost has no Kubernetes clients; call build_clients() first")
        return self.clients

    def build_controllers(self) -> list[_ManagedController]:
        clients = self._require_clients()
        built: list[_ManagedController] = []
        for registration in self.registrations:
            options = registration.options or self.settings.manager_options()
            resource_client = ResourceClient(clients.custom_objects, registration.resource)
            name = registration.name or type(registration.controller).__name__.lower()
            finalizers = (
                FinalizerManager(resource_client, registration.finalizers, controller_name=name)
                if registration.finalizers
                else None
            )
            leader_state = LeaderState() if options.leader_election else None
            manager = ResourceManager(
                registration.resource,
                registration.controller,
                resource_client,
                options=options,
                finalizers=finalizers,
                leader_state=leader_state,
                name=name,
            )
            elector = None
            if leader_state is not None:
                elector = LeaseLeaderElector(
                    coordination_api=clients.coordination,
                    namespace=self.settings.pod_namespace,
                    lease_name=self.lease_name_for(registration),
                    identity=self.settings.leader_election_identity,
                    lease_duration_seconds=self.settings.lease_duration_seconds,
                    renew_deadline_seconds=self.settings.renew_deadline_seconds,
                    retry_period_seconds=self.settings.retry_period_seconds,
                    leader_state=leader_state,
                )
            built.append(_ManagedController(manager=manager, elector=elector))
        self.managers = [managed.manager for managed in built]
        return built

    def namespace_labels(self, namespace: str) -> Mapping[str, str] | None:
        """Look up a namespace's labels for ``namespaceSelector`` matching."""
        clients = self._require_clients()
        try:
            found = clients.core.read_namespace(name=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return (found.metadata.labels if found.metadata else None) or {}

    def readiness(self) -> dict[str, bool]:
        return {manager.name: manager.ready.is_set() for manager in self.managers}

    def run(self, shutdown_event: threading.Event) -> None:
        """Run every registered controller and webhook until shutdown."""
        if not self.registrations and not self.webhooks:
            raise ConfigError("Nothing to run: register at least one controller or webhook")

        controllers = self.build_controllers()
        electors = [managed.elector for managed in controllers if managed.elector is not None]
        health_server = start_health_server(
            readiness=self.readiness,
            port=self.settings.health_port,
            leadership=(lambda: any(elector.is_leader for elector in electors))
            if electors
            else None,
        )

        webhook_server = None
        webhook_app = None
        if self.webhooks:
            if self.settings.manage_webhook_configurations:
                register_webhooks(self._require_clients().admission, self.webhooks, self.settings)
            webhook_app = create_app(
                self.webhooks,
                namespace_labels=self.namespace_labels,
                ready=lambda: all(self.readiness().values()),
            )
            webhook_server, _ = start_webhook_server(
                webhook_app,
                port=self.settings.webhook_port,
                certfile=self.settings.webhook_tls_cert_file,
                keyfile=self.settings.webhook_tls_key_file,
            )

        for managed in controllers:
            self._start_controller(managed, shutdown_event)

        try:
            shutdown_event.wait()
        finally:
            LOGGER.info("Shutting down operator %s", self.settings.name)
            for managed in controllers:
                managed.manager.request_stop()
            for managed in controllers:
                for thread in managed.threads:
                    thread.join(timeout=self.settings.watch_retry_max_seconds)
                    if thread.is_alive():
                        LOGGER.error("Thread %s did not stop in time", thread.name)
            if webhook_server is not None:
                webhook_server.should_exit = True
            if webhook_app is not None:
                webhook_app.state.executor.shutdown(wait=False, cancel_futures=True)
            health_server.shutdown()
            LOGGER.info("Operator %s stopped", self.settings.name)

    def _start_controller(self, managed: _ManagedController, shutdown_event: threading.Event) -> None:
        manager = managed.manager

        def _run_manager() -> None:
            unexpected_exit = False
            try:
                manager.run_forever(shutdown_event=shutdown_event)
                unexpected_exit = not shutdown_event.is_set()
                if unexpected_exit:
                    LOGGER.error(
                        "Controller %s exited without a stop signal; terminating process",
                        manager.name,
                    )
            except Exception:
                unexpected_exit = True
                LOGGER.exception("Controller %s crashed", manager.name)
            finally:
                if unexpected_exit:
                    shutdown_event.set()

        managed.threads.append(
            threading.Thread(target=_run_manager, name=f"controller-{manager.name}", daemon=True)
        )
        if managed.elector is not None:
            elector = managed.elector

            def _run_elector() -> None:
                try:
                    elector.run(
                        on_started_leading=manager.promote,
                        on_stopped_leading=manager.demote,
                        stop_event=shutdown_event,
                        on_new_leader=manager.observe_new_leader,
                    )
                except Exception:
                    LOGGER.exception("Leader election for %s crashed", elector.lease_name)
                    shutdown_event.set()

            managed.threads.append(
                threading.Thread(target=_run_elector, name=f"leader-{manager.name}", daemon=True)
            )
        for thread in managed.threads:
            thread.start()

