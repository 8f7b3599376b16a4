from __future__ import annotations

import copy
import threading
import time
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from reconciler.src.config import ResourceManagerOptions
from reconciler.src.controller import (
    ErrorPolicyResult,
    RequeueError,
    ResourceController,
    ResourceControllerResult,
)
from reconciler.src.engine import ResourceManager
from reconciler.src.finalizers import FinalizerManager, ResourceFinalizer
from reconciler.src.kube import AccessDeniedError, NotFoundError
from reconciler.src.leader import LeaderState
from reconciler.src.resources import (
    ReconcileRequest,
    ResourceIdentity,
    ResourceType,
    WatchEvent,
    WatchEventType,
)

WIDGETS = ResourceType(group="example.com", version="v1", plural="widgets", kind="Widget")
CLEANUP = "example.com/cleanup"


def _widget(
    name: str = "a",
    size: int = 1,
    revision: str = "1",
    finalizers: list[str] | None = None,
    status: dict[str, Any] | None = None,
    deleting: bool = False,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": "team-a", "resourceVersion": revision}
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if deleting:
        metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    obj: dict[str, Any] = {"metadata": metadata, "spec": {"size": size}}
    if status is not None:
        obj["status"] = status
    return obj


def _identity(name: str = "a") -> ResourceIdentity:
    return ResourceIdentity(namespace="team-a", name=name, kind="Widget")


def _request(
    obj: dict[str, Any],
    event_type: WatchEventType = WatchEventType.MODIFIED,
    requeue: bool = False,
) -> ReconcileRequest:
    return ReconcileRequest(
        identity=_identity(obj["metadata"]["name"]),
        event=WatchEvent(type=event_type, object=obj),
        requeue=requeue,
    )


class FakeResourceClient:
    def __init__(self, items: list[dict[str, Any]] | None = None) -> None:
        self.resource = WIDGETS
        self.items = items or []
        self.list_error: Exception | None = None
        self.patches: list[tuple[str, list[dict[str, Any]]]] = []
        self.deleting = False

    def list(self, **kwargs: Any) -> tuple[list[dict[str, Any]], str]:
        if self.list_error is not None:
            raise self.list_error
        return copy.deepcopy(self.items), "100"

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        raise NotFoundError("gone", status=404)

    def patch_json(
        self, name: str, operations: list[dict[str, Any]], namespace: str | None = None
    ) -> dict[str, Any]:
        self.patches.append((name, operations))
        obj = _widget(name=name, revision="2", deleting=self.deleting)
        obj["metadata"]["finalizers"] = operations[-1]["value"]
        return obj


class RecordingController(ResourceController):
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.reconcile_effects: list[Any] = []
        self.policy: Any = None

    def reconcile(self, entity: dict[str, Any]) -> ResourceControllerResult | None:
        self.calls.append(("reconcile", copy.deepcopy(entity)))
        if self.reconcile_effects:
            effect = self.reconcile_effects.pop(0)
            if isinstance(effect, Exception):
                raise effect
            return effect
        return None

    def status_modified(self, entity: dict[str, Any]) -> None:
        self.calls.append(("status_modified", entity))

    def deleted(self, entity: dict[str, Any]) -> None:
        self.calls.append(("deleted", entity))

    def error_policy(
        self, entity: dict[str, Any], attempt: int, exception: Exception
    ) -> ErrorPolicyResult:
        self.calls.append(("error_policy", attempt))
        if isinstance(self.policy, Exception):
            raise self.policy
        return self.policy or ErrorPolicyResult.requeue()

    def on_promotion(self) -> None:
        self.calls.append(("on_promotion", None))

    def on_demotion(self) -> None:
        self.calls.append(("on_demotion", None))

    def on_new_leader(self, identity: str | None) -> None:
        self.calls.append(("on_new_leader", identity))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class Cleanup(ResourceFinalizer):
    def __init__(self) -> None:
        self.finalized: list[str] = []
        self.error: Exception | None = None

    def finalize(self, entity: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.finalized.append(entity["metadata"]["name"])


class TestResourceManagerProcessing:
    """Per-event dispatch, driven synchronously through ``_process``."""

    def setup_method(self) -> None:
        self.client = FakeResourceClient()
        self.controller = RecordingController()
        self.cleanup = Cleanup()
        self.finalizers = FinalizerManager(
            self.client, [self.cleanup], controller_name="widgets"  # type: ignore[arg-type]
        )
        self.manager = ResourceManager(
            WIDGETS,
            self.controller,
            self.client,  # type: ignore[arg-type]
            options=ResourceManagerOptions(leader_election=False),
            finalizers=self.finalizers,
        )
        self.manager.queue.shutdown()
        self.manager.queue = MagicMock()

    def _scheduled(self) -> list[tuple[ReconcileRequest, float]]:
        return [call.args for call in self.manager.queue.requeue_after.call_args_list]

    def test_added_registers_finalizers_before_reconcile(self) -> None:
        self.manager._process(_request(_widget(), WatchEventType.ADDED))

        assert self.client.patches[0][1][-1]["value"] == [CLEANUP]
        (name, entity), = self.controller.calls
        assert name == "reconcile"
        assert entity["metadata"]["finalizers"] == [CLEANUP]

    def test_added_skips_finalizer_registration_when_disabled(self) -> None:
        self.manager.options = ResourceManagerOptions(
            leader_election=False, auto_register_finalizers=False
        )

        self.manager._process(_request(_widget(), WatchEventType.ADDED))

        assert self.client.patches == []
        assert self.controller.names() == ["reconcile"]

    def test_modified_dispatch_follows_change_classification(self) -> None:
        self.manager._process(_request(_widget(size=1)))
        self.manager._process(_request(_widget(size=2, revision="2")))
        self.manager._process(_request(_widget(size=2, revision="3", status={"phase": "Ready"})))
        self.manager._process(_request(_widget(size=2, revision="4", status={"phase": "Ready"})))
        self.manager._process(
            _request(_widget(size=2, revision="5", status={"phase": "Ready"}, finalizers=["x"]))
        )

        assert self.controller.names() == ["reconcile", "reconcile", "status_modified"]
        self.manager.queue.requeue_after.assert_not_called()

    def test_result_requeue_schedules_redelivery_with_event_type(self) -> None:
        self.controller.reconcile_effects = [
            ResourceControllerResult.requeue(30, WatchEventType.ADDED)
        ]

        self.manager._process(_request(_widget()))

        ((request, delay),) = self._scheduled()
        assert delay == 30
        assert request.requeue is True
        assert request.event.type is WatchEventType.ADDED
        assert request.identity == _identity()

    def test_requeue_error_schedules_without_counting_a_failure(self) -> None:
        self.controller.reconcile_effects = [RequeueError("not yet", delay_seconds=5)]

        self.manager._process(_request(_widget()))

        ((request, delay),) = self._scheduled()
        assert delay == 5
        assert request.event.type is WatchEventType.MODIFIED
        assert self.manager.attempts(_identity()) == 0
        assert "error_policy" not in self.controller.names()

    def test_failures_back_off_linearly_and_reset_on_success(self) -> None:
        self.controller.reconcile_effects = [RuntimeError("boom"), RuntimeError("boom"), None]

        self.manager._process(_request(_widget()))
        self.manager._process(_request(_widget(), requeue=True))

        assert [delay for _, delay in self._scheduled()] == [10, 20]
        assert ("error_policy", 2) in self.controller.calls
        assert self.manager.attempts(_identity()) == 2

        self.manager._process(_request(_widget(), requeue=True))
        assert self.manager.attempts(_identity()) == 0

    def test_default_error_delay_is_capped(self) -> None:
        assert self.manager.default_error_delay(1) == 10
        assert self.manager.default_error_delay(59) == 590
        assert self.manager.default_error_delay(500) == 600

    def test_error_policy_delay_overrides_default(self) -> None:
        self.controller.reconcile_effects = [RuntimeError("boom")]
        self.controller.policy = ErrorPolicyResult.requeue(3, WatchEventType.ADDED)

        self.manager._process(_request(_widget()))

        ((request, delay),) = self._scheduled()
        assert delay == 3
        assert request.event.type is WatchEventType.ADDED

    def test_error_policy_ignore_does_not_requeue(self) -> None:
        self.controller.reconcile_effects = [RuntimeError("boom")]
        self.controller.policy = ErrorPolicyResult.ignore()

        self.manager._process(_request(_widget()))

        self.manager.queue.requeue_after.assert_not_called()

    def test_failing_error_policy_falls_back_to_default_requeue(self) -> None:
        self.controller.reconcile_effects = [RuntimeError("boom")]
        self.controller.policy = ValueError("policy bug")

        self.manager._process(_request(_widget()))

        assert [delay for _, delay in self._scheduled()] == [10]

    def test_not_found_during_reconcile_is_not_an_error(self) -> None:
        self.controller.reconcile_effects = [NotFoundError("gone", status=404)]

        self.manager._process(_request(_widget()))

        assert "error_policy" not in self.controller.names()
        self.manager.queue.requeue_after.assert_not_called()

    def test_requeue_uses_latest_cached_revision(self) -> None:
        self.manager._process(_request(_widget(size=1)))
        self.manager._process(_request(_widget(size=5, revision="2")))

        self.manager._process(_request(_widget(size=1), requeue=True))

        assert self.controller.calls[-1][1]["spec"]["size"] == 5

    def test_deleting_object_runs_finalizers_instead_of_reconcile(self) -> None:
        self.manager._process(_request(_widget(finalizers=[CLEANUP], deleting=True)))

        assert self.cleanup.finalized == ["a"]
        assert self.controller.names() == []
        assert self.client.patches[-1][1][-1]["value"] == []

    def test_deleting_object_without_our_finalizers_is_skipped(self) -> None:
        self.manager._process(_request(_widget(finalizers=["other.io/x"], deleting=True)))

        assert self.cleanup.finalized == []
        assert self.controller.names() == []

    def test_failing_finalizer_goes_through_error_policy(self) -> None:
        self.cleanup.error = RuntimeError("cloud API down")

        self.manager._process(_request(_widget(finalizers=[CLEANUP], deleting=True)))

        assert self.controller.names() == ["error_policy"]
        assert [delay for _, delay in self._scheduled()] == [10]

    def test_deleted_event_runs_pending_finalizers_then_deleted_callback(self) -> None:
        self.manager._process(_request(_widget()))
        assert _identity() in self.manager.cache.identities()

        self.manager._process(
            _request(_widget(finalizers=[CLEANUP], deleting=True), WatchEventType.DELETED)
        )

        assert self.cleanup.finalized == ["a"]
        assert self.controller.names() == ["reconcile", "deleted"]
        assert _identity() not in self.manager.cache.identities()
        self.manager.queue.evict.assert_called_once_with(_identity())

    def test_deleted_event_waits_for_failed_finalizer(self) -> None:
        self.cleanup.error = RuntimeError("still attached")

        self.manager._process(
            _request(_widget(finalizers=[CLEANUP], deleting=True), WatchEventType.DELETED)
        )

        assert "deleted" not in self.controller.names()
        ((request, _),) = self._scheduled()
        assert request.event.type is WatchEventType.DELETED


    def test_requeue_for_untracked_identity_is_dropped(self) -> None:
        self.manager._process(_request(_widget(), requeue=True))

        assert self.controller.names() == []
        assert _identity() not in self.manager.cache.identities()

    def test_retry_after_partial_finalize_resumes_at_failed_finalizer(self) -> None:
        ran: list[str] = []

        class ReleaseVolume(ResourceFinalizer):
            identifier = "example.com/release-volume"

            def finalize(self, entity: dict[str, Any]) -> None:
                ran.append("release-volume")

        class EmptyBucket(ResourceFinalizer):
            identifier = "example.com/empty-bucket"
            fail = True

            def finalize(self, entity: dict[str, Any]) -> None:
                ran.append("empty-bucket")
                if self.fail:
                    raise RuntimeError("bucket not empty")

        bucket = EmptyBucket()
        self.manager.finalizers = FinalizerManager(
            self.client, [ReleaseVolume(), bucket], controller_name="widgets"  # type: ignore[arg-type]
        )
        self.client.deleting = True
        names = ["example.com/release-volume", "example.com/empty-bucket"]

        self.manager._process(_request(_widget(finalizers=list(names), deleting=True)))

        ((redelivery, _),) = self._scheduled()
        assert redelivery.event.object["metadata"]["finalizers"] == ["example.com/empty-bucket"]
        cached = self.manager.cache.get(_identity())
        assert cached is not None
        assert cached["metadata"]["finalizers"] == ["example.com/empty-bucket"]

        bucket.fail = False
        self.manager._process(redelivery)

        assert ran == ["release-volume", "empty-bucket", "empty-bucket"]
        assert self.controller.names() == ["error_policy"]

    def test_finalizer_requeue_error_keeps_partial_progress(self) -> None:
        class Drain(ResourceFinalizer):
            identifier = "example.com/drain"

            def finalize(self, entity: dict[str, Any]) -> None:
                raise RequeueError("still draining", delay_seconds=5)

        self.manager.finalizers = FinalizerManager(
            self.client, [self.cleanup, Drain()], controller_name="widgets"  # type: ignore[arg-type]
        )
        self.client.deleting = True

        self.manager._process(
            _request(_widget(finalizers=[CLEANUP, "example.com/drain"], deleting=True))
        )

        ((redelivery, delay),) = self._scheduled()
        assert delay == 5
        assert redelivery.event.object["metadata"]["finalizers"] == ["example.com/drain"]
        assert "error_policy" not in self.controller.names()

    def test_finalize_without_finalizer_manager_is_a_no_op(self) -> None:
        self.manager.finalizers = None

        assert self.manager._finalize(_request(_widget(deleting=True)), _widget(deleting=True))
        self.manager.queue.requeue_after.assert_not_called()

    def test_newer_generation_cancels_scheduled_requeue(self) -> None:
        current = _widget()
        current["metadata"]["generation"] = 1
        self.manager._process(_request(current))
        newer = _widget(size=2, revision="2")
        newer["metadata"]["generation"] = 2

        self.manager.handle_event(WatchEvent(type=WatchEventType.MODIFIED, object=newer))

        self.manager.queue.cancel_requeue.assert_called_once_with(_identity())
        self.manager.queue.enqueue.assert_called_once()

    def test_same_generation_keeps_scheduled_requeue(self) -> None:
        current = _widget()
        current["metadata"]["generation"] = 3
        self.manager._process(_request(current))
        status_only = _widget(revision="2", status={"ready": True})
        status_only["metadata"]["generation"] = 3

        self.manager.handle_event(WatchEvent(type=WatchEventType.MODIFIED, object=status_only))

        self.manager.queue.cancel_requeue.assert_not_called()

class TestResourceManagerLeadership:
    def setup_method(self) -> None:
        self.client = FakeResourceClient([_widget("listed")])
        self.controller = RecordingController()
        self.state = LeaderState()
        self.manager = ResourceManager(
            WIDGETS,
            self.controller,
            self.client,  # type: ignore[arg-type]
            leader_state=self.state,
        )
        self.manager.queue.shutdown()
        self.manager.queue = MagicMock()

    def _enqueued(self) -> list[ReconcileRequest]:
        return [call.args[0] for call in self.manager.queue.enqueue.call_args_list]

    def test_follower_holds_events_latest_per_identity(self) -> None:
        self.manager.handle_event(WatchEvent(WatchEventType.ADDED, _widget("a")))
        self.manager.handle_event(WatchEvent(WatchEventType.MODIFIED, _widget("a", revision="2")))
        self.manager.handle_event(WatchEvent(WatchEventType.BOOKMARK, {"metadata": {}}))

        self.manager.queue.enqueue.assert_not_called()
        assert self.manager.held_identities() == {_identity("a")}

    def test_leader_without_promotion_still_holds(self) -> None:
        self.state.set_leader(True)

        self.manager.handle_event(WatchEvent(WatchEventType.ADDED, _widget("a")))

        self.manager.queue.enqueue.assert_not_called()

    def test_promote_relists_and_flushes_held_deletions(self) -> None:
        self.manager.handle_event(WatchEvent(WatchEventType.MODIFIED, _widget("listed")))
        self.manager.handle_event(WatchEvent(WatchEventType.DELETED, _widget("vanished")))
        self.state.set_leader(True)

        self.manager.promote()

        enqueued = [(r.identity.name, r.event.type) for r in self._enqueued()]
        assert enqueued == [
            ("listed", WatchEventType.ADDED),
            ("vanished", WatchEventType.DELETED),
        ]
        assert self.controller.names() == ["on_promotion"]
        assert self.manager.held_identities() == set()

    def test_promote_flushes_everything_when_relist_fails(self) -> None:
        self.client.list_error = RuntimeError("API unavailable")
        self.manager.handle_event(WatchEvent(WatchEventType.MODIFIED, _widget("a")))
        self.state.set_leader(True)

        self.manager.promote()

        assert [(r.identity.name, r.event.type) for r in self._enqueued()] == [
            ("a", WatchEventType.MODIFIED)
        ]

    def test_events_flow_after_promotion_and_hold_again_after_demotion(self) -> None:
        self.state.set_leader(True)
        self.manager.promote()
        self.manager.queue.enqueue.reset_mock()

        self.manager.handle_event(WatchEvent(WatchEventType.MODIFIED, _widget("a")))
        assert len(self._enqueued()) == 1

        self.state.set_leader(False)
        self.manager.demote()
        self.manager.handle_event(WatchEvent(WatchEventType.MODIFIED, _widget("b")))

        assert len(self._enqueued()) == 1
        assert self.manager.held_identities() == {_identity("b")}
        assert self.controller.names()[-1] == "on_demotion"

    def test_queued_work_is_held_when_leadership_is_lost(self) -> None:
        self.manager._process(_request(_widget("a")))

        assert self.controller.names() == []
        assert self.manager.held_identities() == {_identity("a")}

    def test_observe_new_leader_notifies_controller(self) -> None:
        self.manager.observe_new_leader("pod-2")

        assert self.controller.calls == [("on_new_leader", "pod-2")]

    def test_leader_election_disabled_never_gates(self) -> None:
        manager = ResourceManager(
            WIDGETS,
            self.controller,
            self.client,  # type: ignore[arg-type]
            options=ResourceManagerOptions(leader_election=False),
            leader_state=self.state,
        )
        try:
            assert manager._gated() is False
        finally:
            manager.queue.shutdown()


class ScriptedSource:
    """Stands in for WatchEventSource: replays events, marks synced, then idles."""

    scripts: dict[str | None, list[Any]] = {}

    def __init__(self, client: Any, namespace: str | None = None, **kwargs: Any) -> None:
        self.namespace = namespace
        self.name = kwargs.get("name", "widgets")
        self.on_synced = kwargs.get("on_synced")
        self._stop = threading.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def events(self, stop_event: threading.Event) -> Iterator[WatchEvent]:
        for item in self.scripts.get(self.namespace, []):
            if isinstance(item, Exception):
                raise item
            yield item
        if self.on_synced is not None:
            self.on_synced()
        while not (stop_event.is_set() or self._stop.is_set()):
            stop_event.wait(timeout=0.01)


class TestResourceManagerRun:
    def test_run_forever_reconciles_watched_objects_until_shutdown(self) -> None:
        controller = RecordingController()
        reconciled = threading.Event()
        controller.reconcile_effects = []
        original = controller.reconcile

        def reconcile(entity: dict[str, Any]) -> ResourceControllerResult | None:
            result = original(entity)
            reconciled.set()
            return result

        controller.reconcile = reconcile  # type: ignore[method-assign]
        manager = ResourceManager(
            WIDGETS,
            controller,
            FakeResourceClient(),  # type: ignore[arg-type]
            options=ResourceManagerOptions(
                leader_election=False, namespaces=("team-a", "team-b")
            ),
        )
        ScriptedSource.scripts = {
            "team-a": [WatchEvent(WatchEventType.ADDED, _widget("a"))],
            "team-b": [],
        }
        shutdown = threading.Event()

        with patch("reconciler.src.engine.WatchEventSource", ScriptedSource):
            runner = threading.Thread(target=manager.run_forever, args=(shutdown,))
            runner.start()
            assert reconciled.wait(timeout=2)
            assert manager.ready.wait(timeout=2)
            shutdown.set()
            runner.join(timeout=5)

        assert not runner.is_alive()
        assert not manager.ready.is_set()
        assert manager.queue.closed

    def test_run_forever_stops_on_access_denied(self) -> None:
        manager = ResourceManager(
            WIDGETS,
            RecordingController(),
            FakeResourceClient(),  # type: ignore[arg-type]
            options=ResourceManagerOptions(leader_election=False),
        )
        ScriptedSource.scripts = {None: [AccessDeniedError("forbidden", status=403)]}

        with patch("reconciler.src.engine.WatchEventSource", ScriptedSource):
            manager.run_forever(threading.Event())

        assert manager.failed

    def test_request_stop_ends_run_forever(self) -> None:
        manager = ResourceManager(
            WIDGETS,
            RecordingController(),
            FakeResourceClient(),  # type: ignore[arg-type]
            options=ResourceManagerOptions(leader_election=False),
        )
        ScriptedSource.scripts = {None: []}

        with patch("reconciler.src.engine.WatchEventSource", ScriptedSource):
            runner = threading.Thread(target=manager.run_forever)
            runner.start()
            assert manager.ready.wait(timeout=2)
            manager.request_stop()
            runner.join(timeout=5)

        assert not runner.is_alive()
        assert not manager.failed


def test_manager_name_defaults_to_controller_class() -> None:
    manager = ResourceManager(WIDGETS, RecordingController(), FakeResourceClient())  # type: ignore[arg-type]
    try:
        assert manager.name == "recordingcontroller"
    finally:
        manager.queue.shutdown()


@pytest.mark.parametrize("event_type", [WatchEventType.BOOKMARK, WatchEventType.ERROR])
def test_progress_events_are_not_queued(event_type: WatchEventType) -> None:
    manager = ResourceManager(
        WIDGETS,
        RecordingController(),
        FakeResourceClient(),  # type: ignore[arg-type]
        options=ResourceManagerOptions(leader_election=False),
    )
    manager.queue.shutdown()
    manager.queue = MagicMock()

    manager.handle_event(WatchEvent(event_type, _widget()))

    manager.queue.enqueue.assert_not_called()


def _wait_for(predicate: Any, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TimedController(RecordingController):
    def __init__(self) -> None:
        super().__init__()
        self.reconciled_at: list[float] = []

    def reconcile(self, entity: dict[str, Any]) -> ResourceControllerResult | None:
        self.reconciled_at.append(time.monotonic())
        return super().reconcile(entity)


class DeletedDuringReconcileController(RecordingController):
    def __init__(self) -> None:
        super().__init__()
        self.reconciling = threading.Event()
        self.deletion_queued = threading.Event()

    def reconcile(self, entity: dict[str, Any]) -> ResourceControllerResult | None:
        self.calls.append(("reconcile", entity))
        self.reconciling.set()
        self.deletion_queued.wait(timeout=5)
        raise RequeueError("later")

    def deleted(self, entity: dict[str, Any]) -> None:
        time.sleep(0.3)
        super().deleted(entity)


class TestResourceManagerWithEventQueue:
    """Timing-sensitive paths through the real queue and its timers."""

    def _manager(self, controller: ResourceController) -> ResourceManager:
        return ResourceManager(
            WIDGETS,
            controller,
            FakeResourceClient(),  # type: ignore[arg-type]
            options=ResourceManagerOptions(leader_election=False),
        )

    def test_requeue_result_redelivers_once_after_delay(self) -> None:
        controller = TimedController()
        controller.reconcile_effects = [ResourceControllerResult.requeue(0.3), None]
        manager = self._manager(controller)
        try:
            manager.handle_event(WatchEvent(type=WatchEventType.ADDED, object=_widget()))

            assert _wait_for(lambda: len(controller.reconciled_at) == 2)
            time.sleep(0.5)

            assert controller.names() == ["reconcile", "reconcile"]
            first, second = controller.reconciled_at
            assert second - first >= 0.3
            assert not manager.queue.has_scheduled(_identity())
        finally:
            manager.queue.shutdown()

    def test_requeue_requested_before_deletion_is_not_delivered(self) -> None:
        controller = DeletedDuringReconcileController()
        manager = self._manager(controller)
        try:
            manager.handle_event(WatchEvent(type=WatchEventType.ADDED, object=_widget()))
            assert controller.reconciling.wait(timeout=5)
            manager.handle_event(
                WatchEvent(type=WatchEventType.DELETED, object=_widget(revision="2"))
            )
            controller.deletion_queued.set()

            assert _wait_for(lambda: "deleted" in controller.names())
            time.sleep(0.3)

            assert controller.names() == ["reconcile", "deleted"]
            assert _identity() not in manager.cache.identities()
            assert not manager.queue.has_scheduled(_identity())
            assert manager.attempts(_identity()) == 0
        finally:
            manager.queue.shutdown()
