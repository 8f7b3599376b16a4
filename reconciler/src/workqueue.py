from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from reconciler.src.metrics import METRICS
from reconciler.src.resources import ReconcileRequest, ResourceIdentity, WatchEventType

LOGGER = logging.getLogger(__name__)


class EventQueue:
    """Per-identity single-flight dispatcher backed by a bounded thread pool.

    Guarantees:

    * At most one ``handler`` call runs at a time for a given
      :class:`ResourceIdentity`; events for that identity are handled in
      arrival order by the worker already serving it.
    * While an identity is busy, consecutive non-delete events collapse to
      the most recent one (latest wins).  ``DELETED`` events are never
      collapsed so deletion callbacks are not lost.
    * Distinct identities run in parallel up to ``max_workers``.
    * :meth:`requeue_after` arms one timer per identity; a newer requeue
      replaces the pending one.

    ``handler`` must not raise; anything that escapes is logged.
    """

    def __init__(
        self,
        handler: Callable[[ReconcileRequest], None],
        max_workers: int = 1,
        name: str = "controller",
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.handler = handler
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._active: set[ResourceIdentity] = set()
        self._pending: dict[ResourceIdentity, list[ReconcileRequest]] = {}
        self._timers: dict[ResourceIdentity, threading.Timer] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def depth(self) -> int:
        with self._lock:
            return len(self._active | set(self._pending))

    def _update_depth_gauge(self) -> None:
        METRICS.queue_depth.labels(controller=self.name).set(len(self._active | set(self._pending)))

    @staticmethod
    def _collapse(pending: list[ReconcileRequest], request: ReconcileRequest) -> None:
        if (
            pending
            and pending[-1].event.type is not WatchEventType.DELETED
            and request.event.type is not WatchEventType.DELETED
        ):
            pending[-1] = request
        else:
            pending.append(request)

    def enqueue(self, request: ReconcileRequest) -> bool:
        """Queue ``request``; returns False once the queue is shut down."""
        with self._lock:
            if self._closed:
                return False
            identity = request.identity
            if identity in self._active:
                self._collapse(self._pending.setdefault(identity, []), request)
                self._update_depth_gauge()
                return True
            self._active.add(identity)
            self._update_depth_gauge()
            self._executor.submit(self._run, request)
            return True

    def _run(self, request: ReconcileRequest) -> None:
        current: ReconcileRequest | None = request
        identity = request.identity
        while current is not None:
            try:
                self.handler(current)
            except Exception:
                LOGGER.exception("Unhandled error processing %s", identity)
            with self._lock:
                pending = self._pending.get(identity)
                if self._closed or not pending:
                    self._pending.pop(identity, None)
                    self._active.discard(identity)
                    self._update_depth_gauge()
                    current = None
                else:
                    current = pending.pop(0)
                    if not pending:
                        del self._pending[identity]

    def requeue_after(self, request: ReconcileRequest, delay_seconds: float) -> bool:
        """Re-deliver ``request`` after ``delay_seconds`` without blocking other identities."""
        with self._lock:
            if self._closed:
                return False
            identity = request.identity
            previous = self._timers.pop(identity, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(max(delay_seconds, 0), self._fire, args=(request,))
            timer.daemon = True
            self._timers[identity] = timer
            timer.start()
            return True

    def _fire(self, request: ReconcileRequest) -> None:
        with self._lock:
            if self._timers.get(request.identity) is not threading.current_thread():
                # Replaced or evicted after the timer had already started.
                return
            del self._timers[request.identity]
        self.enqueue(request)

    def has_scheduled(self, identity: ResourceIdentity) -> bool:
        with self._lock:
            return identity in self._timers

    def cancel_requeue(self, identity: ResourceIdentity) -> None:
        """Cancel the armed timer and drop re-deliveries already waiting for ``identity``."""
        with self._lock:
            timer = self._timers.pop(identity, None)
            pending = self._pending.get(identity)
            if pending:
                pending[:] = [request for request in pending if not request.requeue]
                if not pending:
                    del self._pending[identity]
                self._update_depth_gauge()
        if timer is not None:
            timer.cancel()

    def evict(self, identity: ResourceIdentity) -> None:
        """Drop scheduled requeues for an identity that no longer exists."""
        self.cancel_requeue(identity)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, cancel timers and pending events, and drain in-flight handlers."""
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
            dropped = sum(len(pending) for pending in self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()
        if dropped:
            LOGGER.info("Dropped %d pending events for %s on shutdown", dropped, self.name)
        self._executor.shutdown(wait=wait, cancel_futures=True)
