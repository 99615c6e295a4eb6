from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ingress_operator.src.errors import DEFAULT_SINK, ErrorSink, KeyExtractionError
from ingress_operator.src.keys import controller_of, make_key, object_key
from ingress_operator.src.metrics import METRICS
from ingress_operator.src.reconciler import SERVICE_KIND


class WatchedKind(str, Enum):
    SERVICE = "Service"
    INGRESS = "Ingress"


class EventType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Notification:
    """One change seen on a watched collection.

    ``old`` is only set for ``UPDATED``; ``obj`` is always the newest state.
    """

    kind: WatchedKind
    event: EventType
    obj: Any
    old: Any = None


class EventRouter:
    """Turns watch notifications into work-queue keys.

    Services are enqueued on add and delete, and on update unless the old
    and new objects are equal. Ingresses are only interesting when deleted:
    the key of their controlling Service is enqueued so a wanted Ingress gets
    recreated. Key errors are reported to the error sink and the event is
    dropped; the router never raises back into an informer.
    """

    def __init__(
        self,
        enqueue: Callable[[str], None],
        error_sink: ErrorSink | None = None,
        owner_kind: str = SERVICE_KIND,
        logger: logging.Logger | None = None,
    ) -> None:
        self.enqueue = enqueue
        self.error_sink = error_sink or DEFAULT_SINK
        self.owner_kind = owner_kind
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: dict[WatchedKind, Callable[[Notification], str | None]] = {
            WatchedKind.SERVICE: self._route_service,
            WatchedKind.INGRESS: self._route_ingress,
        }

    def route(self, notification: Notification) -> str | None:
        """Enqueue the key *notification* maps to, if any, and return it."""
        try:
            key = self._handlers[notification.kind](notification)
        except KeyExtractionError as exc:
            METRICS.events_total.labels(
                kind=notification.kind.value, event=notification.event.value, outcome="error"
            ).inc()
            self.error_sink.report(exc)
            return None

        outcome = "enqueued" if key is not None else "ignored"
        METRICS.events_total.labels(
            kind=notification.kind.value, event=notification.event.value, outcome=outcome
        ).inc()
        if key is None:
            return None

        self.logger.debug(
            "Enqueueing %s from %s %s", key, notification.kind.value, notification.event.value
        )
        self.enqueue(key)
        return key

    def _route_service(self, notification: Notification) -> str | None:
        if notification.event is EventType.UPDATED and notification.old == notification.obj:
            return None
        return object_key(notification.obj)

    def _route_ingress(self, notification: Notification) -> str | None:
        if notification.event is not EventType.DELETED:
            return None

        owner = controller_of(notification.obj)
        if owner is None or owner.kind != self.owner_kind:
            return None

        metadata = getattr(notification.obj, "metadata", None)
        if metadata is None or not owner.name:
            raise KeyExtractionError(f"cannot build owner key for {notification.obj!r}")
        return make_key(getattr(metadata, "namespace", None), owner.name)

    def register(self, kind: WatchedKind, informer: Any) -> None:
        """Attach handlers for *kind* to an informer's notification fan-out."""
        if kind is WatchedKind.SERVICE:
            informer.add_event_handler(
                on_add=lambda obj: self.route(Notification(kind, EventType.ADDED, obj)),
                on_update=lambda old, new: self.route(
                    Notification(kind, EventType.UPDATED, new, old=old)
                ),
                on_delete=lambda obj: self.route(Notification(kind, EventType.DELETED, obj)),
            )
        else:
            informer.add_event_handler(
                on_delete=lambda obj: self.route(Notification(kind, EventType.DELETED, obj)),
            )
