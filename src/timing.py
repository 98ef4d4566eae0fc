from __future__ import annotations

import logging
from typing import Iterable

from clock import ClockProtocol
from errors import MalformedEventOrder
from metrics import LatencyTimeline, compute_latency_metrics
from records import (
    TERMINAL_EVENT_KINDS,
    AttemptResult,
    BackendEvent,
    ErrorKind,
    EventKind,
    LifecycleEvent,
)


logger = logging.getLogger(__name__)


class _TimelineBuilder:
    """Validates event order for one attempt and keeps the stamps it needs."""

    def __init__(self) -> None:
        self.dispatched_at: int | None = None
        self.first_byte_at: int | None = None
        self.token_timestamps: list[int] = []
        self.terminal: LifecycleEvent | None = None
        self._next_token_index = 0

    def add(self, event: BackendEvent, at_ns: int) -> LifecycleEvent:
        kind = event.kind
        if self.terminal is not None:
            raise MalformedEventOrder(f"{kind.value} event after terminal {self.terminal.kind.value}")
        if kind is EventKind.DISPATCHED:
            if self.dispatched_at is not None:
                raise MalformedEventOrder("duplicate dispatched event")
            self.dispatched_at = at_ns
            return LifecycleEvent(kind=kind, at_ns=at_ns)

        if self.dispatched_at is None:
            raise MalformedEventOrder(f"{kind.value} event before dispatched")

        if kind is EventKind.FIRST_BYTE:
            if self.first_byte_at is not None:
                raise MalformedEventOrder("duplicate first_byte event")
            self.first_byte_at = at_ns
            return LifecycleEvent(kind=kind, at_ns=at_ns)

        if kind is EventKind.TOKEN:
            index = self._next_token_index if event.token_index is None else event.token_index
            if index != self._next_token_index:
                raise MalformedEventOrder(
                    f"token index {index} out of order, expected {self._next_token_index}"
                )
            if self.first_byte_at is None:
                self.first_byte_at = at_ns
            self._next_token_index += 1
            self.token_timestamps.append(at_ns)
            return LifecycleEvent(kind=kind, at_ns=at_ns, token_index=index)

        self.terminal = LifecycleEvent(kind=kind, at_ns=at_ns)
        return self.terminal


class TimingEngine:
    """Stamps a Backend's event stream and derives per-attempt latency metrics.

    Every event is stamped on the thread that pulls it from the Backend, right
    after ``next()`` returns, so the hand-off to the aggregator never shows up
    in the measured intervals.
    """

    def __init__(self, clock: ClockProtocol) -> None:
        self.clock = clock

    def run_attempt(
        self,
        events: Iterable[BackendEvent],
        deadline_ns: int | None = None,
    ) -> AttemptResult:
        builder = _TimelineBuilder()
        terminal_event: BackendEvent | None = None
        iterator = iter(events)
        try:
            while True:
                try:
                    event = next(iterator)
                except StopIteration:
                    break
                at_ns = self.clock.now()
                builder.add(event, at_ns)
                # A terminal event stamped past the deadline is a timeout too.
                if deadline_ns is not None and at_ns >= deadline_ns:
                    return self._abandon(builder, at_ns, ErrorKind.TIMEOUT, "request deadline elapsed")
                if event.kind in TERMINAL_EVENT_KINDS:
                    terminal_event = event
            if terminal_event is None:
                raise MalformedEventOrder("event stream ended without a terminal event")
        except MalformedEventOrder as exc:
            logger.debug("Discarding attempt: %s", exc)
            return AttemptResult(
                success=False,
                timing=None,
                error_kind=ErrorKind.MALFORMED_EVENT_ORDER,
                message=str(exc),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Backend raised instead of yielding a failed event", exc_info=True)
            return self._abandon(
                builder,
                self.clock.now(),
                ErrorKind.TRANSPORT_ERROR,
                f"{type(exc).__name__}: {exc}",
            )
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

        assert builder.terminal is not None
        timing = self._build_timing(builder, builder.terminal.at_ns, terminal_event)
        if terminal_event.kind is EventKind.COMPLETED:
            return AttemptResult(success=True, timing=timing)
        return AttemptResult(
            success=False,
            timing=timing,
            error_kind=terminal_event.error_kind or ErrorKind.TRANSPORT_ERROR,
            status_code=terminal_event.status_code,
            message=terminal_event.message,
            retry_after_s=terminal_event.retry_after_s,
        )

    def _abandon(
        self,
        builder: _TimelineBuilder,
        at_ns: int,
        error_kind: ErrorKind,
        message: str,
    ) -> AttemptResult:
        timing = None
        if builder.dispatched_at is not None:
            timing = self._build_timing(builder, at_ns, None)
        return AttemptResult(success=False, timing=timing, error_kind=error_kind, message=message)

    @staticmethod
    def _build_timing(
        builder: _TimelineBuilder,
        ended_at_ns: int,
        terminal_event: BackendEvent | None,
    ):
        assert builder.dispatched_at is not None
        reported_output = terminal_event.output_tokens if terminal_event is not None else None
        return compute_latency_metrics(
            LatencyTimeline(
                request_sent_at=builder.dispatched_at,
                first_token_at=builder.first_byte_at,
                token_timestamps=builder.token_timestamps,
                response_done_at=ended_at_ns,
            ),
            input_tokens=terminal_event.input_tokens if terminal_event is not None else None,
            output_tokens=reported_output,
        )
