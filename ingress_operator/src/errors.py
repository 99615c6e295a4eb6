from __future__ import annotations

import logging

from ingress_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class OperatorError(Exception):
    """Base class for errors raised by the ingress operator."""


class NotFoundError(OperatorError):
    """Raised by an informer cache when no object is stored under a key."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found in cache")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class KeyExtractionError(OperatorError):
    """Raised when a ``namespace/name`` key cannot be built from or split into parts."""


class ReconcileError(OperatorError):
    """A failed sync, carrying enough context to log what was attempted.

    The underlying exception (usually a ``kubernetes.client.ApiException``)
    is chained as ``__cause__``.
    """

    def __init__(self, key: str, operation: str, namespace: str = "", name: str = "") -> None:
        self.key = key
        self.operation = operation
        self.namespace = namespace
        self.name = name
        super().__init__(f"{operation} failed for {key}")


class RetryExhaustedError(OperatorError):
    """Reported to the error sink when a key is dropped after too many retries."""

    def __init__(self, key: str, attempts: int, last_error: BaseException) -> None:
        self.key = key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"dropping {key} out of the queue after {attempts} retries: {last_error}")


class ErrorSink:
    """Process-wide sink for errors that cannot be handled where they occur.

    Errors reported here are never fatal; they are logged with their
    traceback and counted so operators can alert on them.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    def report(self, error: BaseException, key: str | None = None) -> None:
        METRICS.errors_reported_total.labels(error=type(error).__name__).inc()
        if key is None:
            self.logger.error("Unhandled error: %s", error, exc_info=error)
        else:
            self.logger.error("Unhandled error for %s: %s", key, error, exc_info=error)


DEFAULT_SINK = ErrorSink()


def handle_error(error: BaseException, key: str | None = None) -> None:
    """Report *error* to the process-wide default sink."""
    DEFAULT_SINK.report(error, key=key)
