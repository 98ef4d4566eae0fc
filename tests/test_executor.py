from __future__ import annotations

from pathlib import Path
import random
import sys
from threading import Event, Timer
import time

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from admission import ConcurrencyController
from classifier import OutcomeClassifier
from clock import Clock
from executor import RequestExecutor
from fakes import ScriptedBackend, failure_events, make_spec, success_events
from records import BackendEvent, ErrorKind, Outcome, OutcomeStatus, RetryPolicy
from timing import TimingEngine


NO_JITTER = RetryPolicy(max_attempts=3, initial_backoff_s=0.1, multiplier=2.0, max_backoff_s=10.0, jitter=0.0)


class Harness:
    def __init__(self, backend, policy: RetryPolicy = NO_JITTER, timeout_s: float | None = None) -> None:
        clock = Clock()
        self.outcomes: list[Outcome] = []
        self.cancel_event = Event()
        self.controller = ConcurrencyController(concurrency=1, clock=clock)
        self.executor = RequestExecutor(
            backend=backend,
            controller=self.controller,
            classifier=OutcomeClassifier(policy, random.Random(0)),
            timing_engine=TimingEngine(clock),
            sink=self.outcomes.append,
            cancel_event=self.cancel_event,
            clock=clock,
            default_timeout_s=timeout_s,
        )


def test_success_on_first_attempt() -> None:
    backend = ScriptedBackend(lambda spec, attempt: success_events(tokens=4))
    harness = Harness(backend)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.attempts == 1
    assert outcome.error_kind is None
    assert outcome.timing.output_tokens == 4
    assert outcome.timing.ttft_ns <= outcome.timing.total_ns
    assert harness.outcomes == [outcome]
    assert harness.controller.in_flight == 0


def test_server_errors_then_success_backs_off_100_then_200_ms() -> None:
    def script(spec, attempt):
        if attempt < 2:
            return failure_events(ErrorKind.SERVER_ERROR, status_code=503)
        return success_events()

    backend = ScriptedBackend(script)
    harness = Harness(backend)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.attempts == 3
    assert outcome.retries == 2
    assert outcome.backoff_delays_s == (pytest.approx(0.1), pytest.approx(0.2))
    issue_times = backend.issue_times["req-0"]
    first_gap = issue_times[1] - issue_times[0]
    second_gap = issue_times[2] - issue_times[1]
    assert 0.09 <= first_gap < 0.19
    assert 0.19 <= second_gap < 0.29
    assert harness.controller.admitted == 3
    assert harness.controller.in_flight == 0


def test_client_error_is_not_retried() -> None:
    backend = ScriptedBackend(lambda spec, attempt: failure_events(ErrorKind.CLIENT_ERROR, status_code=401))
    harness = Harness(backend)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.CLIENT_ERROR
    assert outcome.attempts == 1
    assert backend.total_calls == 1


def test_retries_exhausted_keeps_last_error() -> None:
    policy = RetryPolicy(max_attempts=3, initial_backoff_s=0.001, max_backoff_s=0.01, jitter=0.0)
    backend = ScriptedBackend(lambda spec, attempt: failure_events(ErrorKind.SERVER_ERROR, status_code=500))
    harness = Harness(backend, policy=policy)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.RETRIES_EXHAUSTED
    assert outcome.last_error_kind is ErrorKind.SERVER_ERROR
    assert outcome.attempts == 3
    assert len(harness.outcomes) == 1


def test_malformed_stream_is_not_retried() -> None:
    backend = ScriptedBackend(lambda spec, attempt: success_events(tokens=1) + [BackendEvent.token(1)])
    harness = Harness(backend)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.MALFORMED_EVENT_ORDER
    assert outcome.attempts == 1


def test_backend_raising_on_issue_counts_as_transport_error() -> None:
    class ExplodingBackend:
        def issue(self, spec, timeout_s):
            raise ConnectionRefusedError("no route")

    harness = Harness(ExplodingBackend(), policy=RetryPolicy(max_attempts=1, jitter=0.0))

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.RETRIES_EXHAUSTED
    assert outcome.last_error_kind is ErrorKind.TRANSPORT_ERROR
    assert harness.controller.in_flight == 0


def test_cancelled_before_admission() -> None:
    backend = ScriptedBackend(lambda spec, attempt: success_events())
    harness = Harness(backend)
    harness.cancel_event.set()

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.CANCELLED
    assert outcome.attempts == 0
    assert backend.total_calls == 0
    assert harness.outcomes == [outcome]


def test_cancellation_interrupts_backoff() -> None:
    policy = RetryPolicy(max_attempts=5, initial_backoff_s=5.0, max_backoff_s=5.0, jitter=0.0)
    backend = ScriptedBackend(lambda spec, attempt: failure_events(ErrorKind.SERVER_ERROR, status_code=502))
    harness = Harness(backend, policy=policy)
    timer = Timer(0.1, harness.cancel_event.set)
    timer.start()

    started = time.perf_counter()
    outcome = harness.executor.execute(make_spec())
    elapsed = time.perf_counter() - started
    timer.cancel()

    assert outcome.status is OutcomeStatus.CANCELLED
    assert outcome.attempts == 1
    assert outcome.last_error_kind is ErrorKind.SERVER_ERROR
    assert elapsed < 1.0


def test_in_flight_attempt_finishes_but_is_not_retried_after_cancel() -> None:
    cancel_holder: list[Event] = []

    def script(spec, attempt):
        cancel_holder[0].set()
        return failure_events(ErrorKind.TRANSPORT_ERROR)

    backend = ScriptedBackend(script)
    harness = Harness(backend)
    cancel_holder.append(harness.cancel_event)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.CANCELLED
    assert outcome.attempts == 1
    assert backend.total_calls == 1


def test_in_flight_success_is_kept_after_cancel() -> None:
    cancel_holder: list[Event] = []

    def script(spec, attempt):
        cancel_holder[0].set()
        return success_events()

    harness = Harness(ScriptedBackend(script))
    cancel_holder.append(harness.cancel_event)

    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.SUCCESS


def test_timeout_preempts_retry() -> None:
    policy = RetryPolicy(max_attempts=5, initial_backoff_s=1.0, max_backoff_s=1.0, jitter=0.0)
    backend = ScriptedBackend(lambda spec, attempt: failure_events(ErrorKind.SERVER_ERROR, status_code=500))
    harness = Harness(backend, policy=policy, timeout_s=0.3)

    started = time.perf_counter()
    outcome = harness.executor.execute(make_spec())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.TIMEOUT
    assert outcome.attempts == 1
    assert time.perf_counter() - started < 0.5


def test_spec_timeout_overrides_default() -> None:
    backend = ScriptedBackend(lambda spec, attempt: success_events(), hold_s=0.2)
    harness = Harness(backend, timeout_s=10.0)

    outcome = harness.executor.execute(make_spec(timeout_s=0.05))

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind is ErrorKind.TIMEOUT
