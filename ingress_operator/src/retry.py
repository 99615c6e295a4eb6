from __future__ import annotations

import logging
from typing import Protocol

from ingress_operator.src.errors import DEFAULT_SINK, ErrorSink, RetryExhaustedError
from ingress_operator.src.metrics import METRICS

DEFAULT_MAX_RETRIES = 10


class RetryQueue(Protocol):
    def num_requeues(self, key: str) -> int: ...

    def add_rate_limited(self, key: str) -> None: ...

    def forget(self, key: str) -> None: ...


class RetryPolicy:
    """Decides what happens to a key after a failed sync.

    While the queue has re-admitted the key at most ``max_retries`` times it
    goes back with backoff. After that the error is reported to the sink and
    the key is forgotten; only a new watch event will bring it back.
    """

    def __init__(
        self,
        queue: RetryQueue,
        max_retries: int = DEFAULT_MAX_RETRIES,
        error_sink: ErrorSink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.queue = queue
        self.max_retries = max_retries
        self.error_sink = error_sink or DEFAULT_SINK
        self.logger = logger or logging.getLogger(__name__)

    def handle_error(self, key: str, error: BaseException) -> None:
        requeues = self.queue.num_requeues(key)
        if requeues <= self.max_retries:
            self.logger.warning(
                "Sync of %s failed (%s); retry %d of %d scheduled with backoff",
                key,
                error,
                requeues + 1,
                self.max_retries + 1,
            )
            METRICS.retries_total.inc()
            self.queue.add_rate_limited(key)
            return

        METRICS.dropped_keys_total.inc()
        exhausted = RetryExhaustedError(key, requeues, error)
        exhausted.__cause__ = error
        self.error_sink.report(exhausted, key=key)
        self.queue.forget(key)
