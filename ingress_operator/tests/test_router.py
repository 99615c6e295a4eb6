from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

from kubernetes.client import V1Ingress, V1ObjectMeta, V1OwnerReference, V1Service

from ingress_operator.src.errors import KeyExtractionError
from ingress_operator.src.router import EventRouter, EventType, Notification, WatchedKind


def make_service(
    name: str = "web",
    namespace: str = "ns1",
    annotations: dict[str, str] | None = None,
) -> V1Service:
    return V1Service(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            annotations=annotations,
        )
    )


def make_ingress(
    name: str = "web",
    namespace: str = "ns1",
    owner_kind: str | None = "Service",
    owner_name: str | None = None,
    controller: bool = True,
) -> V1Ingress:
    references = None
    if owner_kind is not None:
        references = [
            V1OwnerReference(
                api_version="v1",
                kind=owner_kind,
                name=owner_name or name,
                uid=f"uid-{owner_name or name}",
                controller=controller,
            )
        ]
    return V1Ingress(
        metadata=V1ObjectMeta(name=name, namespace=namespace, owner_references=references)
    )


class FakeInformer:
    def __init__(self) -> None:
        self.handlers: list[dict[str, Any]] = []

    def add_event_handler(self, on_add: Any = None, on_update: Any = None, on_delete: Any = None) -> None:
        self.handlers.append({"add": on_add, "update": on_update, "delete": on_delete})


def _make_router() -> tuple[EventRouter, list[str], MagicMock]:
    enqueued: list[str] = []
    sink = MagicMock()
    return EventRouter(enqueued.append, error_sink=sink), enqueued, sink


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def test_service_added_is_enqueued() -> None:
    router, enqueued, _ = _make_router()

    key = router.route(Notification(WatchedKind.SERVICE, EventType.ADDED, make_service()))

    assert key == "ns1/web"
    assert enqueued == ["ns1/web"]


def test_service_deleted_is_enqueued() -> None:
    router, enqueued, _ = _make_router()

    router.route(Notification(WatchedKind.SERVICE, EventType.DELETED, make_service()))

    assert enqueued == ["ns1/web"]


def test_service_update_without_changes_is_suppressed() -> None:
    router, enqueued, _ = _make_router()
    old = make_service(annotations={"ingress/http": "true"})
    new = make_service(annotations={"ingress/http": "true"})

    key = router.route(Notification(WatchedKind.SERVICE, EventType.UPDATED, new, old=old))

    assert key is None
    assert enqueued == []


def test_service_update_with_changes_enqueues_new_key() -> None:
    router, enqueued, _ = _make_router()
    old = make_service()
    new = make_service(annotations={"ingress/http": "true"})

    router.route(Notification(WatchedKind.SERVICE, EventType.UPDATED, new, old=old))

    assert enqueued == ["ns1/web"]


def test_service_without_name_is_reported_and_dropped() -> None:
    router, enqueued, sink = _make_router()
    broken = V1Service(metadata=V1ObjectMeta(namespace="ns1"))

    key = router.route(Notification(WatchedKind.SERVICE, EventType.ADDED, broken))

    assert key is None
    assert enqueued == []
    sink.report.assert_called_once()
    assert isinstance(sink.report.call_args.args[0], KeyExtractionError)


# ---------------------------------------------------------------------------
# Ingresses
# ---------------------------------------------------------------------------


def test_deleted_owned_ingress_enqueues_owner_key_once() -> None:
    router, enqueued, _ = _make_router()

    router.route(
        Notification(WatchedKind.INGRESS, EventType.DELETED, make_ingress(name="svc-a"))
    )

    assert enqueued == ["ns1/svc-a"]


def test_deleted_ingress_enqueues_owner_name_not_ingress_name() -> None:
    router, enqueued, _ = _make_router()
    ingress = make_ingress(name="stale-route", owner_name="web")

    router.route(Notification(WatchedKind.INGRESS, EventType.DELETED, ingress))

    assert enqueued == ["ns1/web"]


def test_deleted_ingress_without_owner_is_ignored() -> None:
    router, enqueued, sink = _make_router()

    key = router.route(
        Notification(WatchedKind.INGRESS, EventType.DELETED, make_ingress(owner_kind=None))
    )

    assert key is None
    assert enqueued == []
    sink.report.assert_not_called()


def test_deleted_ingress_owned_by_other_kind_is_ignored() -> None:
    router, enqueued, _ = _make_router()

    router.route(
        Notification(WatchedKind.INGRESS, EventType.DELETED, make_ingress(owner_kind="Deployment"))
    )

    assert enqueued == []


def test_deleted_ingress_with_non_controller_reference_is_ignored() -> None:
    router, enqueued, _ = _make_router()

    router.route(
        Notification(WatchedKind.INGRESS, EventType.DELETED, make_ingress(controller=False))
    )

    assert enqueued == []


def test_ingress_add_and_update_are_ignored() -> None:
    router, enqueued, _ = _make_router()
    ingress = make_ingress()

    router.route(Notification(WatchedKind.INGRESS, EventType.ADDED, ingress))
    router.route(Notification(WatchedKind.INGRESS, EventType.UPDATED, ingress, old=make_ingress()))

    assert enqueued == []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_wires_all_service_handlers() -> None:
    router, enqueued, _ = _make_router()
    informer = FakeInformer()

    router.register(WatchedKind.SERVICE, informer)
    handlers = informer.handlers[0]
    handlers["add"](make_service(name="a"))
    handlers["update"](make_service(name="b"), make_service(name="b", annotations={"x": "y"}))
    handlers["delete"](make_service(name="c"))

    assert enqueued == ["ns1/a", "ns1/b", "ns1/c"]


def test_register_wires_only_ingress_delete_handler() -> None:
    router, enqueued, _ = _make_router()
    informer = FakeInformer()

    router.register(WatchedKind.INGRESS, informer)
    handlers = informer.handlers[0]

    assert handlers["add"] is None
    assert handlers["update"] is None
    handlers["delete"](make_ingress(name="svc-a"))
    assert enqueued == ["ns1/svc-a"]
