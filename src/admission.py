from __future__ import annotations

from collections import deque
from contextlib import contextmanager
import logging
from threading import Condition, Event
from typing import Callable, Iterator

from clock import Clock, ClockProtocol, NANOS_PER_SECOND
from errors import AdmissionCancelled


logger = logging.getLogger(__name__)

AdmitCallback = Callable[[int], None]


class TokenBucket:
    """Continuous-refill token bucket; starts full with ``burst`` tokens.

    Not thread-safe on its own: the controller only touches it while holding
    its condition lock.
    """

    def __init__(self, rate_per_s: float, burst: int, now_ns: int) -> None:
        if rate_per_s <= 0:
            raise ValueError("rate_per_s must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate_per_s = rate_per_s
        self.burst = burst
        self.tokens = float(burst)
        self._updated_at_ns = now_ns

    def _refill(self, now_ns: int) -> None:
        elapsed_ns = now_ns - self._updated_at_ns
        if elapsed_ns <= 0:
            return
        self.tokens = min(float(self.burst), self.tokens + elapsed_ns * self.rate_per_s / NANOS_PER_SECOND)
        self._updated_at_ns = now_ns

    def wait_time_s(self, now_ns: int) -> float:
        self._refill(now_ns)
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.rate_per_s

    def take(self, now_ns: int) -> bool:
        self._refill(now_ns)
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True


class ConcurrencyController:
    """FIFO admission control: a cap on in-flight attempts plus an optional rate cap.

    Waiters queue in arrival order and only the head of the queue may be
    admitted, so a later arrival can never overtake an earlier one. All waits
    are ``Condition.wait`` calls bounded by ``poll_interval_s``, which is how
    quickly a raised cancel event is noticed when nobody calls ``wake_all()``.
    """

    def __init__(
        self,
        concurrency: int,
        rate_limit_rps: float | None = None,
        burst: int = 1,
        clock: ClockProtocol | None = None,
        poll_interval_s: float = 0.01,
        on_admit: AdmitCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        self.concurrency = concurrency
        self.clock = clock or Clock()
        self.poll_interval_s = poll_interval_s
        self.on_admit = on_admit
        self.bucket = (
            TokenBucket(rate_limit_rps, burst, self.clock.now())
            if rate_limit_rps is not None
            else None
        )
        self._condition = Condition()
        self._waiters: deque[object] = deque()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.admitted = 0
        self.released = 0
        self.last_admission_ns: int | None = None

    @property
    def waiting(self) -> int:
        with self._condition:
            return len(self._waiters)

    def acquire(self, cancel_event: Event | None = None) -> None:
        ticket = object()
        with self._condition:
            self._waiters.append(ticket)
            try:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise AdmissionCancelled("run cancelled while waiting for admission")
                    timeout_s = self.poll_interval_s
                    if self._waiters[0] is ticket and self.in_flight < self.concurrency:
                        now_ns = self.clock.now()
                        rate_wait_s = 0.0 if self.bucket is None else self.bucket.wait_time_s(now_ns)
                        if rate_wait_s <= 0.0 and (self.bucket is None or self.bucket.take(now_ns)):
                            self._admit(now_ns)
                            return
                        timeout_s = min(max(rate_wait_s, 1e-4), self.poll_interval_s)
                    self._condition.wait(timeout_s)
            except BaseException:
                try:
                    self._waiters.remove(ticket)
                except ValueError:
                    pass
                self._condition.notify_all()
                raise

    def _admit(self, now_ns: int) -> None:
        self._waiters.popleft()
        self.in_flight += 1
        self.admitted += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        self.last_admission_ns = now_ns
        if self.on_admit is not None:
            self.on_admit(now_ns)
        # The next waiter is now head of the queue and may be admissible too.
        self._condition.notify_all()

    def release(self) -> None:
        with self._condition:
            if self.in_flight <= 0:
                raise RuntimeError("release() called without a matching acquire()")
            self.in_flight -= 1
            self.released += 1
            self._condition.notify_all()

    @contextmanager
    def slot(self, cancel_event: Event | None = None) -> Iterator[None]:
        self.acquire(cancel_event)
        try:
            yield
        finally:
            self.release()

    def wake_all(self) -> None:
        with self._condition:
            self._condition.notify_all()
