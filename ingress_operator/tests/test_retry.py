from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import pytest

from ingress_operator.src.errors import ErrorSink, ReconcileError, RetryExhaustedError, handle_error
from ingress_operator.src.retry import RetryPolicy
from ingress_operator.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


class FakeQueue:
    def __init__(self) -> None:
        self.requeues: dict[str, int] = {}
        self.rate_limited: list[str] = []
        self.forgotten: list[str] = []

    def num_requeues(self, key: str) -> int:
        return self.requeues.get(key, 0)

    def add_rate_limited(self, key: str) -> None:
        self.rate_limited.append(key)
        self.requeues[key] = self.requeues.get(key, 0) + 1

    def forget(self, key: str) -> None:
        self.forgotten.append(key)
        self.requeues.pop(key, None)


def test_failure_under_bound_is_requeued_with_backoff() -> None:
    queue = FakeQueue()
    sink = MagicMock()
    policy = RetryPolicy(queue, max_retries=10, error_sink=sink)

    policy.handle_error("ns1/web", ReconcileError("ns1/web", "create-ingress"))

    assert queue.rate_limited == ["ns1/web"]
    assert queue.forgotten == []
    sink.report.assert_not_called()


def test_key_is_dropped_after_retry_budget_is_spent() -> None:
    queue = FakeQueue()
    sink = MagicMock()
    policy = RetryPolicy(queue, max_retries=10, error_sink=sink)
    error = ReconcileError("ns1/web", "create-ingress")

    # The first attempt and ten retries go back with backoff.
    for _ in range(11):
        policy.handle_error("ns1/web", error)

    assert len(queue.rate_limited) == 11
    sink.report.assert_not_called()

    policy.handle_error("ns1/web", error)

    assert len(queue.rate_limited) == 11
    assert queue.forgotten == ["ns1/web"]
    sink.report.assert_called_once()
    reported = sink.report.call_args.args[0]
    assert isinstance(reported, RetryExhaustedError)
    assert reported.last_error is error
    assert reported.__cause__ is error
    assert sink.report.call_args.kwargs["key"] == "ns1/web"


def test_forgotten_key_gets_a_fresh_retry_budget() -> None:
    queue = FakeQueue()
    policy = RetryPolicy(queue, max_retries=0, error_sink=MagicMock())
    error = RuntimeError("boom")

    policy.handle_error("ns1/web", error)
    policy.handle_error("ns1/web", error)
    policy.handle_error("ns1/web", error)

    assert queue.rate_limited == ["ns1/web", "ns1/web"]
    assert queue.forgotten == ["ns1/web"]


def test_retry_bound_with_real_queue_counts_requeues() -> None:
    # Backoff long enough that nothing is re-admitted during the test.
    queue = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=1000.0, max_delay=1000.0)
    )
    sink = MagicMock()
    policy = RetryPolicy(queue, max_retries=10, error_sink=sink)
    try:
        with patch.object(queue, "add_rate_limited", wraps=queue.add_rate_limited) as spy:
            for _ in range(12):
                policy.handle_error("ns1/web", RuntimeError("still failing"))

        assert spy.call_count == 11
        sink.report.assert_called_once()
        assert queue.num_requeues("ns1/web") == 0
    finally:
        queue.shut_down()


def test_negative_max_retries_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(FakeQueue(), max_retries=-1)


def test_error_sink_logs_with_traceback(caplog: pytest.LogCaptureFixture) -> None:
    sink = ErrorSink(logger=logging.getLogger("test.sink"))
    try:
        raise RuntimeError("kaboom")
    except RuntimeError as exc:
        error = exc

    with caplog.at_level(logging.ERROR, logger="test.sink"):
        sink.report(error, key="ns1/web")

    record = caplog.records[-1]
    assert "ns1/web" in record.getMessage()
    assert record.exc_info is not None


def test_handle_error_reports_to_default_sink() -> None:
    with patch("ingress_operator.src.errors.DEFAULT_SINK") as default_sink:
        error = RuntimeError("boom")
        handle_error(error, key="ns1/web")

    default_sink.report.assert_called_once_with(error, key="ns1/web")
