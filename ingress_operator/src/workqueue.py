from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from ingress_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: str) -> float: ...

    def forget(self, item: str) -> None: ...

    def num_requeues(self, item: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the item, so the
    failure count doubles as the item's requeue count until :meth:`forget`.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**exponent grows without bound; compare before multiplying.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items (``qps`` refill, ``burst`` capacity).

    Each call reserves a token and returns how long the caller must wait for
    it. There is no per-item state, so forgetting is a no-op.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    """Per-item exponential backoff (5 ms to 1000 s) bounded by a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited re-admission.

    A key is always in exactly one of three states: absent, queued (waiting in
    ``_queue``) or in-flight (handed out by :meth:`get` and listed in
    ``_processing``). ``_dirty`` holds every key that needs processing: an
    :meth:`add` for a key already in ``_dirty`` is coalesced, and an
    :meth:`add` for an in-flight key only marks it dirty so that :meth:`done`
    puts it back on the queue. A key is therefore never handed to two workers
    at once.

    Delayed adds are kept in a heap drained by a daemon thread which is
    started on first use.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "workqueue",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._delay_cond = threading.Condition(self._lock)

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        # Delayed adds: heap of (ready_at, seq, key) plus the earliest
        # ready_at per key so that stale heap entries can be skipped.
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._delay_thread: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def is_shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def _add_locked(self, key: str) -> None:
        if self._shutting_down:
            return
        METRICS.queue_adds_total.inc()
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, key: str) -> None:
        """Queue *key* unless it is already queued; defer it if it is in-flight."""
        with self._lock:
            self._add_locked(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; return ``(key, shutting_down)``.

        Once the queue is shut down, keys still queued are handed out; after
        that every call returns ``(None, True)``.
        """
        with self._lock:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        """Mark *key* as no longer in-flight, re-queueing it if it was added meanwhile."""
        with self._lock:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting new keys and wake every blocked :meth:`get` call."""
        with self._lock:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._cond.notify_all()
            self._delay_cond.notify_all()

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        If the key is already waiting with an earlier deadline, the earlier
        deadline wins.
        """
        if delay <= 0:
            self.add(key)
            return

        with self._lock:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._ensure_delay_thread_locked()
            self._delay_cond.notify()

    def _ensure_delay_thread_locked(self) -> None:
        if self._delay_thread is not None and self._delay_thread.is_alive():
            return
        self._delay_thread = threading.Thread(
            target=self._run_delayed_adds,
            name=f"{self.name}-delay",
            daemon=True,
        )
        self._delay_thread.start()

    def _run_delayed_adds(self) -> None:
        with self._lock:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    if self._waiting_ready_at.get(key) != ready_at:
                        continue
                    del self._waiting_ready_at[key]
                    self._add_locked(key)

                timeout = self._waiting[0][0] - now if self._waiting else None
                self._delay_cond.wait(timeout=timeout)

    def add_rate_limited(self, key: str) -> None:
        """Re-admit *key* after the delay its rate limiter asks for."""
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)
