from __future__ import annotations

import logging
import threading
import time

from kubernetes.client import CoreV1Api, NetworkingV1Api

from ingress_operator.src.config import ControllerConfig
from ingress_operator.src.errors import DEFAULT_SINK, ErrorSink
from ingress_operator.src.informer import Informer, ingress_informer, service_informer
from ingress_operator.src.metrics import METRICS
from ingress_operator.src.reconciler import IngressReconciler, SyncAction
from ingress_operator.src.retry import RetryPolicy
from ingress_operator.src.router import EventRouter, WatchedKind
from ingress_operator.src.workqueue import RateLimitingQueue

DEFAULT_WORKERS = 5


class WorkerPool:
    """Fixed set of worker threads draining the work queue through the reconciler.

    The pool holds no locks of its own: one sync per key at a time is
    guaranteed by the queue never handing out a key that is still in-flight.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        reconciler: IngressReconciler,
        retry_policy: RetryPolicy,
        workers: int = DEFAULT_WORKERS,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.reconciler = reconciler
        self.retry_policy = retry_policy
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self._threads: list[threading.Thread] = []

    def process_next_item(self) -> bool:
        """Take one key off the queue and sync it; return False once the queue shut down."""
        key, shutting_down = self.queue.get()
        if shutting_down or key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.sync(key)
        except Exception as exc:
            operation = getattr(exc, "operation", "unexpected")
            METRICS.reconcile_errors_total.labels(operation=operation).inc()
            if operation == "unexpected":
                self.logger.exception("Unexpected error syncing %s", key)
            self.retry_policy.handle_error(key, exc)
        else:
            METRICS.reconcile_total.labels(action=result.action.value).inc()
            if result.action is not SyncAction.NOOP:
                self.logger.debug("Synced %s: %s", key, result.action.value)
            self.queue.forget(key)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def _run_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.queue.is_shutting_down():
            if not self.process_next_item():
                return

    def start(self, stop_event: threading.Event) -> None:
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker,
                args=(stop_event,),
                name=f"ingress-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        self.logger.info("Started %d workers", self.workers)

    def run(self, stop_event: threading.Event) -> None:
        """Run the workers until *stop_event* is set, then let in-flight syncs finish."""
        self.start(stop_event)
        stop_event.wait()
        pending = len(self.queue)
        if pending:
            self.logger.info("Stopping workers with %d keys still queued", pending)
        self.queue.shut_down()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self.logger.info("All workers stopped")


class Controller:
    """Wires the Service and Ingress informers, event router and worker pool together."""

    def __init__(
        self,
        service_informer: Informer,
        ingress_informer: Informer,
        queue: RateLimitingQueue,
        pool: WorkerPool,
        router: EventRouter,
        cache_sync_timeout_seconds: float = 120.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.service_informer = service_informer
        self.ingress_informer = ingress_informer
        self.queue = queue
        self.pool = pool
        self.router = router
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        router.register(WatchedKind.SERVICE, service_informer)
        router.register(WatchedKind.INGRESS, ingress_informer)

    @property
    def informers(self) -> tuple[Informer, Informer]:
        return self.service_informer, self.ingress_informer

    def caches_synced(self) -> bool:
        return all(informer.has_synced for informer in self.informers)

    def request_stop(self) -> None:
        for informer in self.informers:
            informer.request_stop()

    def run(self, shutdown_event: threading.Event) -> bool:
        """Start the informers, wait for their caches, then run workers until shutdown.

        Returns False without starting workers if the caches did not sync
        within ``cache_sync_timeout_seconds`` or shutdown was requested first.
        """
        for informer in self.informers:
            informer.start(shutdown_event)

        try:
            for informer in self.informers:
                if not informer.wait_for_sync(shutdown_event, self.cache_sync_timeout_seconds):
                    if not shutdown_event.is_set():
                        self.logger.error(
                            "Timed out after %ss waiting for %s cache to sync",
                            self.cache_sync_timeout_seconds,
                            informer.kind,
                        )
                    self.queue.shut_down()
                    return False

            self.logger.info(
                "Caches synced (%d services, %d ingresses); ingress operator started",
                len(self.service_informer.list()),
                len(self.ingress_informer.list()),
            )
            self.ready.set()
            self.pool.run(shutdown_event)
            return True
        finally:
            self.ready.clear()
            self.request_stop()


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
    error_sink: ErrorSink | None = None,
) -> Controller:
    """Construct a :class:`Controller` and all of its parts from *config*."""
    sink = error_sink or DEFAULT_SINK
    namespace = config.watch_namespace or None
    services = service_informer(
        core_api, namespace=namespace, watch_timeout_seconds=config.watch_timeout_seconds
    )
    ingresses = ingress_informer(
        networking_api, namespace=namespace, watch_timeout_seconds=config.watch_timeout_seconds
    )

    queue = RateLimitingQueue(name="ingress")
    reconciler = IngressReconciler(
        networking_api=networking_api,
        service_cache=services,
        ingress_cache=ingresses,
        trigger_annotation=config.trigger_annotation,
        ingress_class_name=config.ingress_class_name,
        host=config.ingress_host,
        backend_port=config.backend_port,
    )
    retry_policy = RetryPolicy(queue, max_retries=config.max_retries, error_sink=sink)
    pool = WorkerPool(queue, reconciler, retry_policy, workers=config.worker_count)
    router = EventRouter(queue.add, error_sink=sink)

    return Controller(
        service_informer=services,
        ingress_informer=ingresses,
        queue=queue,
        pool=pool,
        router=router,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )
