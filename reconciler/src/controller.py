from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from reconciler.src.resources import WatchEventType

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceControllerResult:
    """Outcome of a reconcile callback.

    ``requeue_after`` of ``None`` means done; otherwise the engine re-delivers
    the object after that many seconds as ``event_type`` (defaulting to the
    type of the triggering event).
    """

    requeue_after: float | None = None
    event_type: WatchEventType | None = None

    @classmethod
    def ok(cls) -> ResourceControllerResult:
        return cls()

    @classmethod
    def requeue(
        cls, delay_seconds: float, event_type: WatchEventType | None = None
    ) -> ResourceControllerResult:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        return cls(requeue_after=delay_seconds, event_type=event_type)


class ErrorAction(str, Enum):
    IGNORE = "Ignore"
    REQUEUE = "Requeue"


@dataclass(frozen=True)
class ErrorPolicyResult:
    """Decision returned by :meth:`ResourceController.error_policy`.

    A requeue without ``delay_seconds`` uses the engine's default backoff.
    """

    action: ErrorAction = ErrorAction.REQUEUE
    delay_seconds: float | None = None
    event_type: WatchEventType | None = None

    @classmethod
    def ignore(cls) -> ErrorPolicyResult:
        return cls(action=ErrorAction.IGNORE)

    @classmethod
    def requeue(
        cls, delay_seconds: float | None = None, event_type: WatchEventType | None = None
    ) -> ErrorPolicyResult:
        return cls(action=ErrorAction.REQUEUE, delay_seconds=delay_seconds, event_type=event_type)


class RequeueError(Exception):
    """Raise from any callback to request a delayed retry without counting a failure."""

    def __init__(
        self,
        message: str = "requeue requested",
        delay_seconds: float = 0,
        event_type: WatchEventType | None = None,
    ) -> None:
        super().__init__(message)
        self.delay_seconds = delay_seconds
        self.event_type = event_type


class ResourceController:
    """Base class for user controllers; override the callbacks you need.

    Objects are plain dicts as returned by the API server.  Callbacks run on
    worker threads and may be invoked more than once for the same state
    (including briefly from two replicas during lease handover), so they
    must be idempotent.
    """

    def reconcile(self, entity: dict[str, Any]) -> ResourceControllerResult | None:
        return None

    def status_modified(self, entity: dict[str, Any]) -> None:
        return None

    def deleted(self, entity: dict[str, Any]) -> None:
        return None

    def error_policy(
        self, entity: dict[str, Any], attempt: int, exception: Exception
    ) -> ErrorPolicyResult:
        return ErrorPolicyResult.requeue()

    def on_promotion(self) -> None:
        return None

    def on_demotion(self) -> None:
        return None

    def on_new_leader(self, identity: str | None) -> None:
        LOGGER.debug("%s observed new leader %s", type(self).__name__, identity)
