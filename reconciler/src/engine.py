from __future__ import annotations

import logging
import threading
import time
from typing import Any

from reconciler.src.cache import ChangeType, ResourceCache
from reconciler.src.config import ResourceManagerOptions
from reconciler.src.controller import (
    ErrorAction,
    ErrorPolicyResult,
    RequeueError,
    ResourceController,
)
from reconciler.src.finalizers import FinalizationError, FinalizerManager
from reconciler.src.kube import AccessDeniedError, NotFoundError, ResourceClient
from reconciler.src.leader import LeaderState
from reconciler.src.metrics import METRICS
from reconciler.src.resources import (
    ReconcileRequest,
    ResourceIdentity,
    ResourceType,
    WatchEvent,
    WatchEventType,
    generation_of,
    identity_of,
    is_deleting,
    resource_version_of,
)
from reconciler.src.watch import WatchEventSource
from reconciler.src.workqueue import EventQueue

LOGGER = logging.getLogger(__name__)


class ResourceManager:
    """Reconciliation engine for one resource type and its controller.

    Watch events flow ``WatchEventSource -> handle_event -> EventQueue ->
    _process``.  Per identity the state moves from idle to reconciling and
    then back to idle, to a scheduled requeue, or to a failure routed
    through the controller's error policy:

    * ``ADDED`` registers finalizers (when enabled) and reconciles.
    * ``MODIFIED`` is classified against the last seen revision.  Spec or
      metadata changes reconcile, status-only changes call
      ``status_modified`` and never requeue, and finalizer-only or no-op
      changes are dropped.
    * An object carrying a deletion timestamp and this controller's
      finalizers runs them in registration order.
    * ``DELETED`` runs any finalizers still listed, then calls ``deleted``
      and forgets the identity.

    With leader election enabled, events received while this replica is a
    follower are held (latest per identity).  :meth:`promote` relists and
    reconciles everything before flushing held deletions.
    """

    def __init__(
        self,
        resource: ResourceType,
        controller: ResourceController,
        client: ResourceClient,
        options: ResourceManagerOptions | None = None,
        finalizers: FinalizerManager | None = None,
        leader_state: LeaderState | None = None,
        name: str | None = None,
    ) -> None:
        self.resource = resource
        self.controller = controller
        self.client = client
        self.options = options or ResourceManagerOptions()
        self.finalizers = finalizers
        self.leader_state = leader_state
        self.name = name or type(controller).__name__.lower()
        self.ready = threading.Event()
        self.cache = ResourceCache()
        self.queue = EventQueue(
            self._process,
            max_workers=self.options.max_concurrent_reconciles,
            name=self.name,
        )
        self._attempts: dict[ResourceIdentity, int] = {}
        self._attempts_lock = threading.Lock()
        self._held: dict[ResourceIdentity, ReconcileRequest] = {}
        self._held_lock = threading.Lock()
        self._sources: list[WatchEventSource] = []
        self._synced_count = 0
        self._synced_lock = threading.Lock()
        self._watch_stop = threading.Event()
        self._stop_requested = threading.Event()
        self._failed = threading.Event()
        self._promoted = threading.Event()

    @property
    def failed(self) -> bool:
        """True once a watch loop died with an unrecoverable error."""
        return self._failed.is_set()

    def _gated(self) -> bool:
        if not self.options.leader_election or self.leader_state is None:
            return False
        return not (self.leader_state.is_leader and self._promoted.is_set())

    def _namespaces(self) -> tuple[str | None, ...]:
        if not self.resource.namespaced or not self.options.namespaces:
            return (None,)
        return self.options.namespaces

    # ------------------------------------------------------------------
    # Event intake and leadership
    # ------------------------------------------------------------------

    def handle_event(self, event: WatchEvent) -> None:
        if event.type in {WatchEventType.BOOKMARK, WatchEventType.ERROR}:
            return
        try:
            identity = identity_of(event.object, self.resource.kind)
        except ValueError:
            LOGGER.warning("Dropping %s event for %s without a name", event.type.value, self.name)
            return
        request = ReconcileRequest(identity=identity, event=event)
        if event.type is WatchEventType.MODIFIED and self._generation_advanced(identity, event.object):
            self.queue.cancel_requeue(identity)
        if self._gated():
            self._hold(request)
            return
        self.queue.enqueue(request)

    def _generation_advanced(self, identity: ResourceIdentity, obj: dict[str, Any]) -> bool:
        new = generation_of(obj)
        old = generation_of(self.cache.get(identity))
        return new is not None and old is not None and new > old

    def _hold(self, request: ReconcileRequest) -> None:
        with self._held_lock:
            self._held[request.identity] = request
            held = len(self._held)
        METRICS.held_events.labels(controller=self.name).set(held)
        LOGGER.debug("Holding %s until promotion", request.identity)

    def held_identities(self) -> set[ResourceIdentity]:
        with self._held_lock:
            return set(self._held)

    def _relist(self) -> list[dict[str, Any]] | None:
        items: list[dict[str, Any]] = []
        try:
            for namespace in self._namespaces():
                listed, _ = self.client.list(
                    namespace=namespace,
                    label_selector=self.options.label_selector,
                    field_selector=self.options.field_selector,
                )
                items.extend(listed)
        except Exception:
            LOGGER.exception("Relist of %s after promotion failed", self.name)
            return None
        return items

    def promote(self) -> None:
        """Leadership acquired: notify the controller, then catch up on missed state."""
        LOGGER.info("Controller %s promoted to leader", self.name)
        try:
            self.controller.on_promotion()
        except Exception:
            LOGGER.exception("on_promotion failed for %s", self.name)
        self._promoted.set()

        items = self._relist()
        with self._held_lock:
            held = self._held
            self._held = {}
        METRICS.held_events.labels(controller=self.name).set(0)

        listed: set[ResourceIdentity] = set()
        for item in items or []:
            try:
                identity = identity_of(item, self.resource.kind)
            except ValueError:
                continue
            listed.add(identity)
            self.queue.enqueue(
                ReconcileRequest(
                    identity=identity,
                    event=WatchEvent(
                        type=WatchEventType.ADDED,
                        object=item,
                        resource_version=resource_version_of(item),
                    ),
                )
            )
        flushed = 0
        for identity, request in held.items():
            if items is None or (
                identity not in listed and request.event.type is WatchEventType.DELETED
            ):
                self.queue.enqueue(request)
                flushed += 1
        LOGGER.info(
            "Catch-up pass for %s queued %d objects and %d held events",
            self.name,
            len(listed),
            flushed,
        )

    def demote(self) -> None:
        """Leadership lost: queued work is held again; running callbacks finish."""
        LOGGER.info("Controller %s demoted to follower", self.name)
        self._promoted.clear()
        try:
            self.controller.on_demotion()
        except Exception:
            LOGGER.exception("on_demotion failed for %s", self.name)

    def observe_new_leader(self, identity: str | None) -> None:
        try:
            self.controller.on_new_leader(identity)
        except Exception:
            LOGGER.exception("on_new_leader failed for %s", self.name)

    # ------------------------------------------------------------------
    # Per-identity state machine (runs on queue workers)
    # ------------------------------------------------------------------

    def default_error_delay(self, attempt: int) -> float:
        return min(
            self.options.error_min_requeue_seconds * max(attempt, 1),
            self.options.error_max_requeue_seconds,
        )

    def _next_attempt(self, identity: ResourceIdentity) -> int:
        with self._attempts_lock:
            attempt = self._attempts.get(identity, 0) + 1
            self._attempts[identity] = attempt
            return attempt

    def _reset_attempts(self, identity: ResourceIdentity) -> None:
        with self._attempts_lock:
            self._attempts.pop(identity, None)

    def attempts(self, identity: ResourceIdentity) -> int:
        with self._attempts_lock:
            return self._attempts.get(identity, 0)

    def _forget(self, identity: ResourceIdentity) -> None:
        self.cache.remove(identity)
        self._reset_attempts(identity)
        self.queue.evict(identity)

    def _process(self, request: ReconcileRequest) -> None:
        if self._gated():
            self._hold(request)
            return

        identity = request.identity
        event = request.event
        obj = event.object
        if event.type is WatchEventType.DELETED:
            self._handle_deleted(request, obj)
            return

        if request.requeue:
            cached = self.cache.get(identity)
            if cached is None:
                LOGGER.debug("Dropping requeue of %s; it is no longer tracked", identity)
                return
            obj = cached
        change = self.cache.upsert(identity, obj)
        if request.requeue or event.type is WatchEventType.ADDED:
            change = ChangeType.OTHER

        if is_deleting(obj):
            if self.finalizers and self.finalizers.pending(obj):
                change = ChangeType.FINALIZING
            else:
                LOGGER.debug("%s is being deleted with no finalizers of ours pending", identity)
                return

        LOGGER.debug("Dispatching %s %s as %s", event.type.value, identity, change.value)
        if change is ChangeType.FINALIZING:
            self._finalize(request, obj)
        elif change is ChangeType.STATUS_UPDATE:
            self._status_modified(obj)
        elif change is ChangeType.OTHER:
            self._reconcile(request, obj)

    def _reconcile(self, request: ReconcileRequest, obj: dict[str, Any]) -> None:
        identity = request.identity
        started = time.monotonic()
        try:
            if (
                request.event.type is WatchEventType.ADDED
                and self.options.auto_register_finalizers
                and self.finalizers
            ):
                obj = self.finalizers.register_all(obj)
                self.cache.upsert(identity, obj)
            result = self.controller.reconcile(obj)
        except NotFoundError:
            LOGGER.info("%s disappeared during reconcile", identity)
            METRICS.reconcile_total.labels(
                controller=self.name, callback="reconcile", outcome="gone"
            ).inc()
            return
        except RequeueError as exc:
            METRICS.reconcile_total.labels(
                controller=self.name, callback="reconcile", outcome="requeue"
            ).inc()
            self._schedule(request, obj, exc.delay_seconds, exc.event_type, reason="requested")
            return
        except Exception as exc:
            METRICS.reconcile_total.labels(
                controller=self.name, callback="reconcile", outcome="error"
            ).inc()
            self._handle_error(request, obj, exc)
            return
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )

        self._reset_attempts(identity)
        if result is None or result.requeue_after is None:
            METRICS.reconcile_total.labels(
                controller=self.name, callback="reconcile", outcome="success"
            ).inc()
            return
        METRICS.reconcile_total.labels(
            controller=self.name, callback="reconcile", outcome="requeue"
        ).inc()
        self._schedule(request, obj, result.requeue_after, result.event_type, reason="result")

    def _status_modified(self, obj: dict[str, Any]) -> None:
        try:
            self.controller.status_modified(obj)
        except Exception:
            LOGGER.exception("status_modified failed for %s", self.name)
            outcome = "error"
        else:
            outcome = "success"
        METRICS.reconcile_total.labels(
            controller=self.name, callback="status_modified", outcome=outcome
        ).inc()

    def _finalize(self, request: ReconcileRequest, obj: dict[str, Any]) -> bool:
        if self.finalizers is None:
            return True
        try:
            finalized = self.finalizers.finalize(obj)
        except FinalizationError as exc:
            obj = exc.entity
            if request.event.type is not WatchEventType.DELETED:
                self.cache.upsert(request.identity, obj)
            if isinstance(exc.error, RequeueError):
                self._schedule(
                    request, obj, exc.error.delay_seconds, exc.error.event_type, reason="requested"
                )
            else:
                self._handle_error(request, obj, exc.error)
            return False
        self._reset_attempts(request.identity)
        if request.event.type is not WatchEventType.DELETED:
            self.cache.upsert(request.identity, finalized)
        return True

    def _handle_deleted(self, request: ReconcileRequest, obj: dict[str, Any]) -> None:
        identity = request.identity
        if self.finalizers and self.finalizers.pending(obj):
            if not self._finalize(request, obj):
                return
        try:
            self.controller.deleted(obj)
        except Exception:
            LOGGER.exception("deleted callback failed for %s", identity)
            outcome = "error"
        else:
            outcome = "success"
        METRICS.reconcile_total.labels(
            controller=self.name, callback="deleted", outcome=outcome
        ).inc()
        self._forget(identity)

    def _schedule(
        self,
        request: ReconcileRequest,
        obj: dict[str, Any],
        delay_seconds: float,
        event_type: WatchEventType | None,
        reason: str,
    ) -> None:
        redelivery = ReconcileRequest(
            identity=request.identity,
            event=WatchEvent(
                type=event_type or request.event.type,
                object=obj,
                resource_version=resource_version_of(obj),
            ),
            requeue=True,
        )
        if self.queue.requeue_after(redelivery, delay_seconds):
            METRICS.requeue_total.labels(controller=self.name, reason=reason).inc()
            LOGGER.info(
                "Requeueing %s as %s in %.1fs (%s)",
                request.identity,
                redelivery.event.type.value,
                delay_seconds,
                reason,
            )

    def _handle_error(self, request: ReconcileRequest, obj: dict[str, Any], exc: Exception) -> None:
        identity = request.identity
        attempt = self._next_attempt(identity)
        LOGGER.error("Processing %s failed (attempt %d)", identity, attempt, exc_info=exc)
        try:
            policy = self.controller.error_policy(obj, attempt, exc)
        except Exception:
            LOGGER.exception("error_policy failed for %s; requeueing with default backoff", identity)
            policy = ErrorPolicyResult.requeue()
        if policy is None or policy.action is ErrorAction.IGNORE:
            LOGGER.warning("Ignoring failure for %s per error policy", identity)
            return
        delay = (
            policy.delay_seconds
            if policy.delay_seconds is not None
            else self.default_error_delay(attempt)
        )
        self._schedule(request, obj, delay, policy.event_type, reason="error")

    # ------------------------------------------------------------------
    # Watch loops
    # ------------------------------------------------------------------

    def _on_source_synced(self) -> None:
        with self._synced_lock:
            self._synced_count += 1
            if self._synced_count >= len(self._sources):
                self.ready.set()
                LOGGER.info("Controller %s finished its initial list", self.name)

    def _pump(self, source: WatchEventSource) -> None:
        try:
            for event in source.events(self._watch_stop):
                if self._watch_stop.is_set():
                    break
                self.handle_event(event)
        except AccessDeniedError:
            self._failed.set()
        except Exception:
            LOGGER.exception("Watch loop for %s crashed", source.name)
            self._failed.set()

    def request_stop(self) -> None:
        self._stop_requested.set()
        self._watch_stop.set()
        for source in self._sources:
            source.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Watch every configured namespace until shutdown or a fatal watch error.

        A manager runs once; after it returns its queue no longer accepts work.
        """
        stop = shutdown_event or threading.Event()
        self._sources = [
            WatchEventSource(
                self.client,
                namespace=namespace,
                label_selector=self.options.label_selector,
                field_selector=self.options.field_selector,
                retry_max_seconds=self.options.watch_retry_max_seconds,
                timeout_seconds=self.options.watch_timeout_seconds,
                name=self.name,
                on_synced=self._on_source_synced,
            )
            for namespace in self._namespaces()
        ]
        threads = [
            threading.Thread(
                target=self._pump,
                args=(source,),
                name=f"watch-{self.name}-{source.namespace or 'all'}",
                daemon=True,
            )
            for source in self._sources
        ]
        for thread in threads:
            thread.start()

        while not (stop.is_set() or self._stop_requested.is_set() or self._failed.is_set()):
            stop.wait(timeout=0.5)

        self.ready.clear()
        self._watch_stop.set()
        for source in self._sources:
            source.request_stop()
        self.queue.shutdown(wait=True)
        for thread in threads:
            thread.join(timeout=self.options.watch_retry_max_seconds)
        LOGGER.info("Controller %s stopped", self.name)
