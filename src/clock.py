from __future__ import annotations

import logging
import time
from typing import Protocol

from errors import ClockUnavailable


logger = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000


class ClockProtocol(Protocol):
    def now(self) -> int:
        ...


class Clock:
    """Monotonic nanosecond clock backed by ``time.perf_counter_ns``."""

    def __init__(self) -> None:
        try:
            info = time.get_clock_info("perf_counter")
        except ValueError as exc:
            raise ClockUnavailable("perf_counter is not available on this platform") from exc
        if not info.monotonic:
            raise ClockUnavailable(
                f"perf_counter is backed by {info.implementation!r}, which is not monotonic"
            )
        self.resolution_s = info.resolution
        logger.debug(
            "Using %s clock (resolution=%.3gs)", info.implementation, info.resolution
        )

    def now(self) -> int:
        return time.perf_counter_ns()


def ns_to_s(value_ns: int) -> float:
    return value_ns / NANOS_PER_SECOND


def s_to_ns(value_s: float) -> int:
    return int(round(value_s * NANOS_PER_SECOND))
