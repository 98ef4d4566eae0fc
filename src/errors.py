from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aggregator import AggregatedReport


class ProfilerError(Exception):
    """Base class for run-level profiler failures."""


class ClockUnavailable(ProfilerError):
    pass


class MalformedEventOrder(ProfilerError):
    pass


class AdmissionCancelled(ProfilerError):
    pass


class RunAborted(ProfilerError):
    """The run stopped before every request finished; ``report`` holds partial results."""

    def __init__(self, reason: str, report: AggregatedReport) -> None:
        super().__init__(f"Run aborted: {reason}")
        self.reason = reason
        self.report = report
