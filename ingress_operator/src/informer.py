from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api

from ingress_operator.src.errors import KeyExtractionError, NotFoundError
from ingress_operator.src.keys import make_key, object_key
from ingress_operator.src.metrics import METRICS

AddHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]
DeleteHandler = Callable[[Any], None]


@dataclass(frozen=True)
class ResourceEventHandler:
    on_add: AddHandler | None = None
    on_update: UpdateHandler | None = None
    on_delete: DeleteHandler | None = None


class Informer:
    """List-then-watch cache of one Kubernetes collection.

    The informer keeps an in-memory snapshot keyed by ``namespace/name`` and
    fans every change out to registered handlers as add/update/delete
    notifications. Readers only ever see whole objects; the snapshot is
    guarded by an ``RLock`` and handlers are invoked outside of it.

    The loop mirrors a plain watch controller:

    1. List the collection, retrying with jittered exponential backoff
       (1 s doubling to 30 s). ``401``/``403`` are configuration errors and
       stop the informer.
    2. Replace the snapshot and emit the differences, then mark the cache
       synced.
    3. Watch from the list's ``resourceVersion``. On ``410 Gone`` re-list and
       resume; on any other error back off and reconnect.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._cache: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._handlers: list[ResourceEventHandler] = []
        self._resource_version: str | None = None

        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def has_synced(self) -> bool:
        return self.synced.is_set()

    def add_event_handler(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
    ) -> None:
        self._handlers.append(
            ResourceEventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def get(self, namespace: str, name: str) -> Any:
        """Return the cached object or raise :class:`NotFoundError`."""
        with self._lock:
            obj = self._cache.get(make_key(namespace, name))
        if obj is None:
            raise NotFoundError(self.kind, namespace, name)
        return obj

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._cache.values())

    def wait_for_sync(self, stop_event: threading.Event, timeout: float) -> bool:
        """Block until the first list has been applied, the stop event fires, or *timeout* passes."""
        deadline = time.monotonic() + timeout
        while not self.synced.is_set():
            remaining = deadline - time.monotonic()
            if stop_event.is_set() or remaining <= 0:
                return False
            self.synced.wait(timeout=min(0.1, remaining))
        return True

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _notify(self, event: str, *objects: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, f"on_{event}")
            if callback is None:
                continue
            try:
                callback(*objects)
            except Exception:
                self.logger.exception("%s %s handler failed", self.kind, event)

    def _replace(self, items: list[Any]) -> None:
        """Swap in a fresh listing and emit what changed relative to the old snapshot."""
        fresh: dict[str, Any] = {}
        for obj in items:
            try:
                fresh[object_key(obj)] = obj
            except KeyExtractionError:
                self.logger.warning("Skipping listed %s without a usable key", self.kind)

        with self._lock:
            previous = self._cache
            self._cache = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("add", obj)
            else:
                self._notify("update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("delete", old)

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        self._replace(list(getattr(listing, "items", None) or []))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_watch_event(self, event: dict[str, Any]) -> None:
        """Apply one watch event to the snapshot and notify handlers."""
        event_type = str(event.get("type", ""))
        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            status = raw.get("code", 500) if isinstance(raw, dict) else 500
            reason = raw.get("message", "watch error") if isinstance(raw, dict) else "watch error"
            raise ApiException(status=status, reason=reason)

        obj = event.get("object")
        if obj is None:
            return

        metadata = getattr(obj, "metadata", None)
        if metadata is not None and getattr(metadata, "resource_version", None):
            self._resource_version = metadata.resource_version

        if event_type == "BOOKMARK":
            return

        try:
            key = object_key(obj)
        except KeyExtractionError:
            self.logger.warning("Ignoring %s %s event without a usable key", self.kind, event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._lock:
                old = self._cache.get(key)
                self._cache[key] = obj
            if old is None:
                self._notify("add", obj)
            else:
                self._notify("update", old, obj)
        elif event_type == "DELETED":
            with self._lock:
                old = self._cache.pop(key, None)
            self._notify("delete", old if old is not None else obj)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                self._resource_version = self._list()
                self.synced.set()
                self.logger.info(
                    "%s cache synced; watching from resourceVersion %s",
                    self.kind,
                    self._resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(resource=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(resource=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=self._resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    self.handle_watch_event(event)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        self._resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.kind,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(resource=self.kind).inc()
                        self._resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.kind).inc()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(resource=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(resource=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def start(self, shutdown_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run_forever,
            kwargs={"shutdown_event": shutdown_event},
            name=f"informer-{self.kind.lower()}",
            daemon=True,
        )
        thread.start()
        return thread


def service_informer(
    core_api: CoreV1Api,
    namespace: str | None = None,
    watch_timeout_seconds: int = 60,
) -> Informer:
    if namespace:
        return Informer(
            kind="Service",
            list_fn=core_api.list_namespaced_service,
            list_kwargs={"namespace": namespace},
            watch_timeout_seconds=watch_timeout_seconds,
        )
    return Informer(
        kind="Service",
        list_fn=core_api.list_service_for_all_namespaces,
        watch_timeout_seconds=watch_timeout_seconds,
    )


def ingress_informer(
    networking_api: NetworkingV1Api,
    namespace: str | None = None,
    watch_timeout_seconds: int = 60,
) -> Informer:
    if namespace:
        return Informer(
            kind="Ingress",
            list_fn=networking_api.list_namespaced_ingress,
            list_kwargs={"namespace": namespace},
            watch_timeout_seconds=watch_timeout_seconds,
        )
    return Informer(
        kind="Ingress",
        list_fn=networking_api.list_ingress_for_all_namespaces,
        watch_timeout_seconds=watch_timeout_seconds,
    )
