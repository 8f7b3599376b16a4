from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterator

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from reconciler.src.kube import (
    AccessDeniedError,
    ClusterApiError,
    GoneError,
    ResourceClient,
    translate_api_exception,
)
from reconciler.src.metrics import METRICS
from reconciler.src.resources import WatchEvent, WatchEventType, resource_version_of

LOGGER = logging.getLogger(__name__)


class WatchEventSource:
    """Restartable list-then-watch stream for one resource type and namespace.

    :meth:`events` yields :class:`WatchEvent` objects until stopped:

    1. With no known ``resourceVersion`` it lists first and yields a
       synthetic ``ADDED`` event for every listed object, then watches from
       the list's ``resourceVersion``.
    2. When the stream ends (server timeout, disconnect) it reopens from the
       last observed ``resourceVersion``.
    3. On ``410 Gone`` it discards the stream and performs exactly one full
       relist before resuming.
    4. Transient failures back off exponentially with jitter, capped at
       ``retry_max_seconds``.
    5. ``401`` / ``403`` raise :class:`AccessDeniedError`; retrying cannot
       fix RBAC.

    Bookmark events only advance the ``resourceVersion`` but are still
    yielded so consumers observe progress.
    """

    def __init__(
        self,
        client: ResourceClient,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
        retry_max_seconds: float = 30,
        timeout_seconds: int = 300,
        name: str | None = None,
        on_synced: Callable[[], None] | None = None,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.label_selector = label_selector
        self.field_selector = field_selector
        self.retry_max_seconds = retry_max_seconds
        self.timeout_seconds = timeout_seconds
        self.name = name or str(client.resource)
        self.on_synced = on_synced
        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._watcher_lock = threading.Lock()
        self._active_watcher: watch.Watch | None = None

    def request_stop(self) -> None:
        """Close the active stream so :meth:`events` returns promptly."""
        self._external_stop.set()
        with self._watcher_lock:
            watcher = self._active_watcher
        if watcher is not None:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _backoff(self, stop_event: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, self.retry_max_seconds)

    def _mark_synced(self) -> None:
        if self.synced.is_set():
            return
        self.synced.set()
        if self.on_synced is not None:
            self.on_synced()

    def events(
        self,
        stop_event: threading.Event | None = None,
        resource_version: str | None = None,
    ) -> Iterator[WatchEvent]:
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        needs_list = resource_version is None
        backoff_seconds: float = 1
        stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    items, resource_version = self.client.list(
                        namespace=self.namespace,
                        label_selector=self.label_selector,
                        field_selector=self.field_selector,
                    )
                except AccessDeniedError:
                    LOGGER.error(
                        "Kubernetes API access denied listing %s. "
                        "Check operator RBAC and service account permissions.",
                        self.name,
                    )
                    METRICS.watch_errors_total.labels(controller=self.name).inc()
                    raise
                except Exception:
                    LOGGER.exception("Listing %s failed", self.name)
                    METRICS.watch_errors_total.labels(controller=self.name).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

                needs_list = False
                LOGGER.info(
                    "Listed %d %s; watching from resourceVersion %s",
                    len(items),
                    self.name,
                    resource_version,
                )
                for item in items:
                    if self._should_stop(stop):
                        return
                    yield WatchEvent(
                        type=WatchEventType.ADDED,
                        object=item,
                        resource_version=resource_version_of(item),
                    )
                self._mark_synced()

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(controller=self.name).inc()
                stream_count += 1
                func, kwargs = self.client.list_target(
                    namespace=self.namespace,
                    label_selector=self.label_selector,
                    field_selector=self.field_selector,
                )
                stream = watcher.stream(
                    func,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    allow_watch_bookmarks=True,
                    **kwargs,
                )
                for raw in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(raw.get("type", ""))
                    obj = raw.get("object")
                    if event_type == WatchEventType.ERROR.value:
                        code = obj.get("code") if isinstance(obj, dict) else None
                        if code == 410:
                            raise GoneError("watch resource version expired", status=410)
                        raise ClusterApiError(f"watch error event: {obj}", status=code)
                    if not isinstance(obj, dict):
                        continue

                    observed_version = resource_version_of(obj)
                    if observed_version:
                        resource_version = observed_version
                    backoff_seconds = 1
                    try:
                        parsed_type = WatchEventType(event_type)
                    except ValueError:
                        LOGGER.debug("Ignoring unknown watch event type %r", event_type)
                        continue
                    yield WatchEvent(
                        type=parsed_type,
                        object=obj,
                        resource_version=observed_version,
                    )
            except (ApiException, ClusterApiError) as exc:
                error = translate_api_exception(exc) if isinstance(exc, ApiException) else exc
                if isinstance(error, GoneError):
                    LOGGER.warning("Watch on %s expired, re-listing", self.name)
                    METRICS.watch_relists_total.labels(controller=self.name).inc()
                    needs_list = True
                    continue
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                if isinstance(error, AccessDeniedError):
                    LOGGER.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.name,
                        error.status,
                    )
                    if error is exc:
                        raise
                    raise error from exc
                LOGGER.exception("Kubernetes API watch error on %s", self.name)
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                LOGGER.exception("Unexpected watch error on %s", self.name)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
