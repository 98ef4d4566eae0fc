from __future__ import annotations

from dataclasses import dataclass, field
import logging
from threading import Lock

from metrics import DEFAULT_RELATIVE_ACCURACY, LogHistogram, ThroughputWindows
from records import ErrorKind, Outcome, OutcomeStatus


logger = logging.getLogger(__name__)

TTFT = "ttft"
TOTAL_LATENCY = "total_latency"
INTER_TOKEN = "inter_token"
TOKENS_PER_SECOND = "tokens_per_second"
LATENCY_METRICS = (TTFT, TOTAL_LATENCY, INTER_TOKEN)
METRIC_NAMES = (*LATENCY_METRICS, TOKENS_PER_SECOND)
COMPARE_KEYS = ("mean", "p50", "p90", "p95", "p99", "p999")


def _min_optional(left: int | None, right: int | None) -> int | None:
    if left is None:
        return right
    if right is None:
        return left
    return min(left, right)


def _max_optional(left: int | None, right: int | None) -> int | None:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


def _add_counts(left: dict[str, int], right: dict[str, int]) -> dict[str, int]:
    merged = dict(left)
    for key, value in right.items():
        merged[key] = merged.get(key, 0) + value
    return merged


def _merge_groups(
    left: dict[str, AggregatedReport], right: dict[str, AggregatedReport]
) -> dict[str, AggregatedReport]:
    merged = {name: report.copy() for name, report in left.items()}
    for name, report in right.items():
        merged[name] = merged[name].merge(report) if name in merged else report.copy()
    return merged


@dataclass(slots=True)
class AggregatedReport:
    relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY
    success_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    failed_by_kind: dict[str, int] = field(default_factory=dict)
    total_attempts: int = 0
    total_retries: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    backend_counts: dict[str, int] = field(default_factory=dict)
    model_counts: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, LogHistogram] = field(default_factory=dict)
    windows: ThroughputWindows = field(default_factory=ThroughputWindows)
    started_at_ns: int | None = None
    first_completed_ns: int | None = None
    last_completed_ns: int | None = None
    by_backend: dict[str, AggregatedReport] = field(default_factory=dict)
    by_model: dict[str, AggregatedReport] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in METRIC_NAMES:
            self.histograms.setdefault(name, LogHistogram(self.relative_accuracy))

    @property
    def total(self) -> int:
        return self.success_count + self.failed_count + self.cancelled_count

    @property
    def success_rate(self) -> float | None:
        """Share of finished (non-cancelled) requests that succeeded."""
        finished = self.success_count + self.failed_count
        if finished == 0:
            return None
        return self.success_count / finished

    @property
    def duration_s(self) -> float | None:
        start = self.started_at_ns if self.started_at_ns is not None else self.first_completed_ns
        if start is None or self.last_completed_ns is None or self.last_completed_ns <= start:
            return None
        return (self.last_completed_ns - start) / 1e9

    @property
    def rps(self) -> float | None:
        duration_s = self.duration_s
        return self.total / duration_s if duration_s else None

    def record(self, outcome: Outcome) -> None:
        """Fold one outcome into this report only; callers handle locking and breakdowns."""
        timing = outcome.timing if outcome.status is OutcomeStatus.SUCCESS else None
        if outcome.status is OutcomeStatus.SUCCESS:
            self.success_count += 1
        elif outcome.status is OutcomeStatus.FAILED:
            self.failed_count += 1
            kind = (outcome.error_kind or ErrorKind.TRANSPORT_ERROR).value
            self.failed_by_kind[kind] = self.failed_by_kind.get(kind, 0) + 1
        else:
            self.cancelled_count += 1

        self.total_attempts += outcome.attempts
        self.total_retries += outcome.retries
        self.backend_counts[outcome.backend] = self.backend_counts.get(outcome.backend, 0) + 1
        self.model_counts[outcome.model] = self.model_counts.get(outcome.model, 0) + 1
        self.first_completed_ns = _min_optional(self.first_completed_ns, outcome.completed_at_ns)
        self.last_completed_ns = _max_optional(self.last_completed_ns, outcome.completed_at_ns)

        output_tokens = 0
        if timing is not None:
            output_tokens = timing.output_tokens
            self.input_tokens += timing.input_tokens or 0
            self.output_tokens += output_tokens
            histograms = self.histograms
            if timing.ttft_ns is not None:
                histograms[TTFT].record(timing.ttft_ns)
            histograms[TOTAL_LATENCY].record(timing.total_ns)
            inter_token = histograms[INTER_TOKEN]
            for interval_ns in timing.inter_token_ns:
                inter_token.record(interval_ns)
            tokens_per_second = timing.tokens_per_second
            if tokens_per_second is not None:
                histograms[TOKENS_PER_SECOND].record(tokens_per_second)
        if outcome.status is not OutcomeStatus.CANCELLED:
            self.windows.record(
                outcome.completed_at_ns,
                success=outcome.status is OutcomeStatus.SUCCESS,
                output_tokens=output_tokens,
            )

    def backend_report(self, backend: str) -> AggregatedReport:
        report = self.by_backend.get(backend)
        if report is None:
            report = self.by_backend[backend] = self._empty_group()
        return report

    def model_report(self, model: str) -> AggregatedReport:
        report = self.by_model.get(model)
        if report is None:
            report = self.by_model[model] = self._empty_group()
        return report

    def _empty_group(self) -> AggregatedReport:
        return AggregatedReport(
            relative_accuracy=self.relative_accuracy,
            windows=ThroughputWindows(self.windows.window_ns, self.windows.max_windows),
            started_at_ns=self.started_at_ns,
        )

    def copy(self) -> AggregatedReport:
        return AggregatedReport(
            relative_accuracy=self.relative_accuracy,
            success_count=self.success_count,
            failed_count=self.failed_count,
            cancelled_count=self.cancelled_count,
            failed_by_kind=dict(self.failed_by_kind),
            total_attempts=self.total_attempts,
            total_retries=self.total_retries,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            backend_counts=dict(self.backend_counts),
            model_counts=dict(self.model_counts),
            histograms={name: histogram.copy() for name, histogram in self.histograms.items()},
            windows=self.windows.copy(),
            started_at_ns=self.started_at_ns,
            first_completed_ns=self.first_completed_ns,
            last_completed_ns=self.last_completed_ns,
            by_backend={name: report.copy() for name, report in self.by_backend.items()},
            by_model={name: report.copy() for name, report in self.by_model.items()},
        )

    def merge(self, other: AggregatedReport) -> AggregatedReport:
        """Return a new report combining both; the operation is commutative."""
        merged = self.copy()
        merged.success_count += other.success_count
        merged.failed_count += other.failed_count
        merged.cancelled_count += other.cancelled_count
        merged.failed_by_kind = _add_counts(merged.failed_by_kind, other.failed_by_kind)
        merged.total_attempts += other.total_attempts
        merged.total_retries += other.total_retries
        merged.input_tokens += other.input_tokens
        merged.output_tokens += other.output_tokens
        merged.backend_counts = _add_counts(merged.backend_counts, other.backend_counts)
        merged.model_counts = _add_counts(merged.model_counts, other.model_counts)
        for name, histogram in other.histograms.items():
            merged.histograms.setdefault(name, LogHistogram(histogram.relative_accuracy)).merge(histogram)
        merged.windows.merge(other.windows)
        merged.started_at_ns = _min_optional(merged.started_at_ns, other.started_at_ns)
        merged.first_completed_ns = _min_optional(merged.first_completed_ns, other.first_completed_ns)
        merged.last_completed_ns = _max_optional(merged.last_completed_ns, other.last_completed_ns)
        merged.by_backend = _merge_groups(merged.by_backend, other.by_backend)
        merged.by_model = _merge_groups(merged.by_model, other.by_model)
        return merged

    def to_dict(self, include_buckets: bool = False) -> dict[str, object]:
        duration_s = self.duration_s
        data: dict[str, object] = {
            "requests": {
                "total": self.total,
                "success": self.success_count,
                "failed": self.failed_count,
                "cancelled": self.cancelled_count,
                "failed_by_kind": dict(sorted(self.failed_by_kind.items())),
            },
            "attempts": {"total": self.total_attempts, "retries": self.total_retries},
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
            "backends": dict(sorted(self.backend_counts.items())),
            "models": dict(sorted(self.model_counts.items())),
            "latency_s": {name: self.histograms[name].summary(scale=1e-9) for name in LATENCY_METRICS},
            "tokens_per_second": self.histograms[TOKENS_PER_SECOND].summary(),
            "throughput": {
                "duration_s": duration_s,
                "rps": self.rps,
                "tps": (self.output_tokens / duration_s) if duration_s else None,
                "windows": self.windows.summary(),
            },
        }
        if self.by_backend:
            data["by_backend"] = {
                name: self.by_backend[name].to_dict(include_buckets) for name in sorted(self.by_backend)
            }
        if self.by_model:
            data["by_model"] = {name: self.by_model[name].to_dict(include_buckets) for name in sorted(self.by_model)}
        if include_buckets:
            data["histograms"] = {name: histogram.to_dict() for name, histogram in self.histograms.items()}
            data["windows"] = self.windows.to_dict()
            data["timestamps_ns"] = {
                "started_at": self.started_at_ns,
                "first_completed": self.first_completed_ns,
                "last_completed": self.last_completed_ns,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AggregatedReport:
        """Rebuild a report written by ``to_dict(include_buckets=True)``."""
        histograms_raw = data.get("histograms")
        if not isinstance(histograms_raw, dict):
            raise ValueError("report is missing histogram buckets")
        histograms = {str(name): LogHistogram.from_dict(raw) for name, raw in histograms_raw.items()}
        accuracies = {histogram.relative_accuracy for histogram in histograms.values()}
        requests = data.get("requests") or {}
        attempts = data.get("attempts") or {}
        tokens = data.get("tokens") or {}
        timestamps = data.get("timestamps_ns") or {}
        return cls(
            relative_accuracy=accuracies.pop() if len(accuracies) == 1 else DEFAULT_RELATIVE_ACCURACY,
            success_count=int(requests.get("success", 0)),
            failed_count=int(requests.get("failed", 0)),
            cancelled_count=int(requests.get("cancelled", 0)),
            failed_by_kind={str(k): int(v) for k, v in (requests.get("failed_by_kind") or {}).items()},
            total_attempts=int(attempts.get("total", 0)),
            total_retries=int(attempts.get("retries", 0)),
            input_tokens=int(tokens.get("input", 0)),
            output_tokens=int(tokens.get("output", 0)),
            backend_counts={str(k): int(v) for k, v in (data.get("backends") or {}).items()},
            model_counts={str(k): int(v) for k, v in (data.get("models") or {}).items()},
            histograms=histograms,
            windows=ThroughputWindows.from_dict(data.get("windows") or {}),
            started_at_ns=timestamps.get("started_at"),
            first_completed_ns=timestamps.get("first_completed"),
            last_completed_ns=timestamps.get("last_completed"),
            by_backend={str(k): cls.from_dict(v) for k, v in (data.get("by_backend") or {}).items()},
            by_model={str(k): cls.from_dict(v) for k, v in (data.get("by_model") or {}).items()},
        )


def _percent_change(baseline: float | None, current: float | None) -> float | None:
    if baseline is None or current is None or baseline == 0:
        return None
    return (current - baseline) / baseline * 100.0


def _change(baseline: float | None, current: float | None) -> dict[str, float | None]:
    return {
        "baseline": baseline,
        "current": current,
        "delta": None if baseline is None or current is None else current - baseline,
        "pct_change": _percent_change(baseline, current),
    }


def _distribution_change(baseline: LogHistogram, current: LogHistogram, scale: float) -> dict[str, object]:
    baseline_summary = baseline.summary(scale)
    current_summary = current.summary(scale)
    return {key: _change(baseline_summary[key], current_summary[key]) for key in COMPARE_KEYS}


def compare_reports(baseline: AggregatedReport, current: AggregatedReport) -> dict[str, object]:
    """Per-metric quantile deltas and percentage change from ``baseline`` to ``current``.

    Backends and models present in both reports are compared as well. A
    percentage change is ``None`` when the baseline value is missing or zero.
    """
    comparison: dict[str, object] = {
        "latency_s": {
            name: _distribution_change(baseline.histograms[name], current.histograms[name], 1e-9)
            for name in LATENCY_METRICS
        },
        "tokens_per_second": _distribution_change(
            baseline.histograms[TOKENS_PER_SECOND], current.histograms[TOKENS_PER_SECOND], 1.0
        ),
        "success_rate": _change(baseline.success_rate, current.success_rate),
        "rps": _change(baseline.rps, current.rps),
        "requests": _change(baseline.total, current.total),
    }
    shared_backends = sorted(set(baseline.by_backend) & set(current.by_backend))
    if shared_backends:
        comparison["by_backend"] = {
            name: compare_reports(baseline.by_backend[name], current.by_backend[name]) for name in shared_backends
        }
    shared_models = sorted(set(baseline.by_model) & set(current.by_model))
    if shared_models:
        comparison["by_model"] = {
            name: compare_reports(baseline.by_model[name], current.by_model[name]) for name in shared_models
        }
    return comparison


class MetricsAggregator:
    """Thread-safe streaming fold of Outcomes into an AggregatedReport.

    Ingestion is O(1) per outcome plus one histogram update per inter-token
    interval; no raw samples are retained. Each outcome is folded into the
    run-wide report and into its backend and model breakdowns. ``snapshot()``
    copies the state under the lock so readers never hold it while
    formatting results.
    """

    def __init__(
        self,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_windows: int = 3600,
        started_at_ns: int | None = None,
    ) -> None:
        self._lock = Lock()
        self._report = AggregatedReport(
            relative_accuracy=relative_accuracy,
            windows=ThroughputWindows(max_windows=max_windows),
            started_at_ns=started_at_ns,
        )

    def ingest(self, outcome: Outcome) -> None:
        with self._lock:
            report = self._report
            report.record(outcome)
            report.backend_report(outcome.backend).record(outcome)
            report.model_report(outcome.model).record(outcome)

    def snapshot(self) -> AggregatedReport:
        with self._lock:
            return self._report.copy()

    def merge(self, other: MetricsAggregator | AggregatedReport) -> None:
        incoming = other.snapshot() if isinstance(other, MetricsAggregator) else other
        with self._lock:
            self._report = self._report.merge(incoming)
        logger.debug("Merged %d outcome(s) into aggregator", incoming.total)

    @property
    def total(self) -> int:
        with self._lock:
            return self._report.total
