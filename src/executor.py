from __future__ import annotations

from enum import Enum
import logging
from threading import Event
from typing import Callable

from admission import ConcurrencyController
from backends import Backend
from classifier import GiveUp, OutcomeClassifier
from clock import ClockProtocol, ns_to_s, s_to_ns
from errors import AdmissionCancelled
from records import (
    Attempt,
    AttemptResult,
    ErrorKind,
    Outcome,
    OutcomeStatus,
    RequestSpec,
    TimingSample,
)
from timing import TimingEngine


logger = logging.getLogger(__name__)

OutcomeSink = Callable[[Outcome], None]


class RequestState(str, Enum):
    PENDING = "pending"
    ADMITTED = "admitted"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RequestState.SUCCEEDED, RequestState.FAILED, RequestState.CANCELLED})


class _RequestRun:
    """Mutable bookkeeping for one logical request; never shared between threads."""

    def __init__(self, spec: RequestSpec) -> None:
        self.spec = spec
        self.state = RequestState.PENDING
        self.attempts = 0
        self.deadline_ns: int | None = None
        self.backoff_delays_s: list[float] = []
        self.last_result: AttemptResult | None = None

    def transition(self, state: RequestState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"{self.spec.request_id} already finished as {self.state.value}")
        logger.debug("%s: %s -> %s", self.spec.request_id, self.state.value, state.value)
        self.state = state


class RequestExecutor:
    """Drives one logical request from admission to exactly one Outcome."""

    def __init__(
        self,
        backend: Backend,
        controller: ConcurrencyController,
        classifier: OutcomeClassifier,
        timing_engine: TimingEngine,
        sink: OutcomeSink,
        cancel_event: Event,
        clock: ClockProtocol,
        default_timeout_s: float | None = None,
    ) -> None:
        self.backend = backend
        self.controller = controller
        self.classifier = classifier
        self.timing_engine = timing_engine
        self.sink = sink
        self.cancel_event = cancel_event
        self.clock = clock
        self.default_timeout_s = default_timeout_s

    def execute(self, spec: RequestSpec) -> Outcome:
        run = _RequestRun(spec)
        timeout_s = spec.timeout_s if spec.timeout_s is not None else self.default_timeout_s

        while True:
            if self.cancel_event.is_set():
                return self._finish(run, RequestState.CANCELLED)

            try:
                with self.controller.slot(self.cancel_event):
                    run.transition(RequestState.ADMITTED)
                    result = self._run_attempt(run, timeout_s)
            except AdmissionCancelled:
                return self._finish(run, RequestState.CANCELLED)

            run.last_result = result
            if result.success:
                return self._finish(run, RequestState.SUCCEEDED)
            if self.cancel_event.is_set():
                # The call was allowed to finish; it must not be retried.
                return self._finish(run, RequestState.CANCELLED)
            if result.error_kind is ErrorKind.TIMEOUT:
                return self._finish(run, RequestState.FAILED, ErrorKind.TIMEOUT)

            decision = self.classifier.classify(result, attempt_index=run.attempts - 1)
            if isinstance(decision, GiveUp):
                return self._finish(run, RequestState.FAILED, decision.error_kind)

            if run.deadline_ns is not None and self.clock.now() + s_to_ns(decision.after_s) >= run.deadline_ns:
                return self._finish(run, RequestState.FAILED, ErrorKind.TIMEOUT)

            run.transition(RequestState.RETRYING)
            run.backoff_delays_s.append(decision.after_s)
            logger.debug(
                "%s: attempt %d failed with %s, retrying in %.3fs",
                spec.request_id,
                run.attempts,
                (result.error_kind or ErrorKind.TRANSPORT_ERROR).value,
                decision.after_s,
            )
            if self.cancel_event.wait(decision.after_s):
                return self._finish(run, RequestState.CANCELLED)

    def _run_attempt(self, run: _RequestRun, timeout_s: float | None) -> AttemptResult:
        now_ns = self.clock.now()
        if run.deadline_ns is None and timeout_s is not None:
            run.deadline_ns = now_ns + s_to_ns(timeout_s)

        remaining_s = None
        if run.deadline_ns is not None:
            remaining_s = ns_to_s(run.deadline_ns - now_ns)
            if remaining_s <= 0:
                return AttemptResult(
                    success=False,
                    timing=None,
                    error_kind=ErrorKind.TIMEOUT,
                    message="request deadline elapsed before dispatch",
                )

        attempt = Attempt(index=run.attempts, spec=run.spec, started_at_ns=now_ns)
        run.attempts += 1
        run.transition(RequestState.IN_FLIGHT)
        try:
            events = self.backend.issue(attempt.spec, remaining_s)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "%s: backend failed to start attempt %d", run.spec.request_id, attempt.index, exc_info=True
            )
            return AttemptResult(
                success=False,
                timing=None,
                error_kind=ErrorKind.TRANSPORT_ERROR,
                message=f"{type(exc).__name__}: {exc}",
            )
        return self.timing_engine.run_attempt(events, deadline_ns=run.deadline_ns)

    def _finish(
        self,
        run: _RequestRun,
        state: RequestState,
        error_kind: ErrorKind | None = None,
    ) -> Outcome:
        run.transition(state)
        result = run.last_result
        status = {
            RequestState.SUCCEEDED: OutcomeStatus.SUCCESS,
            RequestState.FAILED: OutcomeStatus.FAILED,
            RequestState.CANCELLED: OutcomeStatus.CANCELLED,
        }[state]
        timing: TimingSample | None = result.timing if result is not None else None
        outcome = Outcome(
            request_id=run.spec.request_id,
            status=status,
            attempts=run.attempts,
            backend=run.spec.backend,
            model=run.spec.model,
            completed_at_ns=self.clock.now(),
            error_kind=error_kind if status is OutcomeStatus.FAILED else None,
            last_error_kind=None if result is None or result.success else result.error_kind,
            message=None if result is None else result.message,
            timing=timing,
            backoff_delays_s=tuple(run.backoff_delays_s),
        )
        self.sink(outcome)
        return outcome
