from __future__ import annotations

from dataclasses import dataclass
import math
from math import ceil, floor

from records import TimingSample


DEFAULT_RELATIVE_ACCURACY = 0.01
SUMMARY_QUANTILES = (("p50", 0.50), ("p90", 0.90), ("p95", 0.95), ("p99", 0.99), ("p999", 0.999))


@dataclass(slots=True)
class LatencyTimeline:
    request_sent_at: int
    first_token_at: int | None
    token_timestamps: list[int]
    response_done_at: int


@dataclass(slots=True)
class WindowCounts:
    requests: int = 0
    successes: int = 0
    output_tokens: int = 0


def _quantile_cont(values: list[float], percentile: float) -> float | None:
    if not values:
        return None
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def quantile_summary(values: list[float]) -> dict[str, float | int | None]:
    return {
        "count": len(values),
        "p50": _quantile_cont(values, 0.50),
        "p90": _quantile_cont(values, 0.90),
        "p95": _quantile_cont(values, 0.95),
        "p99": _quantile_cont(values, 0.99),
    }


def compute_latency_metrics(
    timeline: LatencyTimeline,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> TimingSample:
    total_ns = timeline.response_done_at - timeline.request_sent_at
    token_count = len(timeline.token_timestamps)
    if output_tokens is None or output_tokens < 0:
        output_tokens = token_count

    ttft_ns = None
    if timeline.first_token_at is not None:
        ttft_ns = timeline.first_token_at - timeline.request_sent_at

    # Stamps arrive in order from the timing engine, no sort needed.
    stamps = timeline.token_timestamps
    inter_token_ns = tuple(stamps[index] - stamps[index - 1] for index in range(1, token_count))

    return TimingSample(
        ttft_ns=ttft_ns,
        total_ns=total_ns,
        inter_token_ns=inter_token_ns,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


class LogHistogram:
    """Sparse logarithmic-bucket histogram with bounded relative error.

    A positive value ``v`` lands in bucket ``ceil(log(v) / log(gamma))`` where
    ``gamma = (1 + a) / (1 - a)``; reporting the bucket's midpoint keeps the
    relative error of every quantile within ``a``. Values ``<= 0`` are counted
    in a dedicated zero bucket. Bucket counts are plain integers, so merging
    is exact, associative and commutative.
    """

    __slots__ = (
        "relative_accuracy",
        "_gamma",
        "_log_gamma",
        "buckets",
        "zero_count",
        "count",
        "total",
        "total_squares",
        "min",
        "max",
    )

    def __init__(self, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> None:
        if not 0.0 < relative_accuracy < 1.0:
            raise ValueError("relative_accuracy must be in (0, 1)")
        self.relative_accuracy = relative_accuracy
        self._gamma = (1.0 + relative_accuracy) / (1.0 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self.buckets: dict[int, int] = {}
        self.zero_count = 0
        self.count = 0
        self.total = 0.0
        self.total_squares = 0.0
        self.min: float | None = None
        self.max: float | None = None

    def __len__(self) -> int:
        return self.count

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogHistogram):
            return NotImplemented
        return (
            self.relative_accuracy == other.relative_accuracy
            and self.buckets == other.buckets
            and self.zero_count == other.zero_count
            and self.count == other.count
            and self.min == other.min
            and self.max == other.max
        )

    def bucket_index(self, value: float) -> int:
        return math.ceil(math.log(value) / self._log_gamma)

    def bucket_value(self, index: int) -> float:
        return 2.0 * self._gamma**index / (self._gamma + 1.0)

    def record(self, value: float) -> None:
        if math.isnan(value):
            return
        if value <= 0:
            self.zero_count += 1
        else:
            index = self.bucket_index(value)
            self.buckets[index] = self.buckets.get(index, 0) + 1
        self.count += 1
        self.total += value
        self.total_squares += value * value
        if self.min is None or value < self.min:
            self.min = value
        if self.max is None or value > self.max:
            self.max = value

    def quantile(self, q: float) -> float | None:
        if not 0.0 <= q <= 1.0:
            raise ValueError("quantile must be in [0, 1]")
        if self.count == 0:
            return None
        assert self.min is not None and self.max is not None

        rank = q * (self.count - 1)
        seen = self.zero_count
        if seen > rank:
            return min(0.0, self.max)
        for index in sorted(self.buckets):
            seen += self.buckets[index]
            if seen > rank:
                return min(max(self.bucket_value(index), self.min), self.max)
        return self.max

    @property
    def mean(self) -> float | None:
        if self.count == 0:
            return None
        return self.total / self.count

    @property
    def std_dev(self) -> float | None:
        if self.count == 0:
            return None
        mean = self.total / self.count
        variance = max(self.total_squares / self.count - mean * mean, 0.0)
        return math.sqrt(variance)

    def merge(self, other: LogHistogram) -> None:
        if other.relative_accuracy != self.relative_accuracy:
            raise ValueError(
                "Cannot merge histograms with different relative accuracy: "
                f"{self.relative_accuracy} != {other.relative_accuracy}"
            )
        for index, bucket_count in other.buckets.items():
            self.buckets[index] = self.buckets.get(index, 0) + bucket_count
        self.zero_count += other.zero_count
        self.count += other.count
        self.total += other.total
        self.total_squares += other.total_squares
        if other.min is not None and (self.min is None or other.min < self.min):
            self.min = other.min
        if other.max is not None and (self.max is None or other.max > self.max):
            self.max = other.max

    def copy(self) -> LogHistogram:
        clone = LogHistogram(self.relative_accuracy)
        clone.merge(self)
        return clone

    def summary(self, scale: float = 1.0) -> dict[str, float | int | None]:
        def scaled(value: float | None) -> float | None:
            return None if value is None else value * scale

        data: dict[str, float | int | None] = {
            "count": self.count,
            "min": scaled(self.min),
            "max": scaled(self.max),
            "mean": scaled(self.mean),
            "std_dev": scaled(self.std_dev),
        }
        for key, q in SUMMARY_QUANTILES:
            data[key] = scaled(self.quantile(q))
        return data

    def to_dict(self) -> dict[str, object]:
        return {
            "relative_accuracy": self.relative_accuracy,
            "count": self.count,
            "zero_count": self.zero_count,
            "sum": self.total,
            "sum_squares": self.total_squares,
            "min": self.min,
            "max": self.max,
            "buckets": {str(index): self.buckets[index] for index in sorted(self.buckets)},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> LogHistogram:
        histogram = cls(float(data.get("relative_accuracy", DEFAULT_RELATIVE_ACCURACY)))
        buckets_raw = data.get("buckets") or {}
        if not isinstance(buckets_raw, dict):
            raise ValueError("buckets must be a mapping")
        histogram.buckets = {int(index): int(value) for index, value in buckets_raw.items()}
        histogram.zero_count = int(data.get("zero_count") or 0)
        histogram.count = int(data.get("count") or 0)
        histogram.total = float(data.get("sum") or 0.0)
        histogram.total_squares = float(data.get("sum_squares") or 0.0)
        histogram.min = None if data.get("min") is None else float(data["min"])
        histogram.max = None if data.get("max") is None else float(data["max"])
        expected = histogram.zero_count + sum(histogram.buckets.values())
        if expected != histogram.count:
            raise ValueError(f"Histogram count {histogram.count} does not match buckets ({expected})")
        return histogram


class ThroughputWindows:
    """Per-second completion counters, keeping only the newest ``max_windows``."""

    __slots__ = ("window_ns", "max_windows", "windows")

    def __init__(self, window_ns: int = 1_000_000_000, max_windows: int = 3600) -> None:
        if window_ns <= 0:
            raise ValueError("window_ns must be > 0")
        if max_windows < 1:
            raise ValueError("max_windows must be >= 1")
        self.window_ns = window_ns
        self.max_windows = max_windows
        self.windows: dict[int, WindowCounts] = {}

    def record(self, completed_at_ns: int, success: bool, output_tokens: int) -> None:
        key = completed_at_ns // self.window_ns
        window = self.windows.get(key)
        if window is None:
            window = self.windows[key] = WindowCounts()
            self._trim()
            # The new window may itself have been the oldest one.
            window = self.windows.get(key)
            if window is None:
                return
        window.requests += 1
        if success:
            window.successes += 1
        window.output_tokens += output_tokens

    def merge(self, other: ThroughputWindows) -> None:
        if other.window_ns != self.window_ns:
            raise ValueError("Cannot merge throughput windows of different widths")
        for key, counts in other.windows.items():
            window = self.windows.setdefault(key, WindowCounts())
            window.requests += counts.requests
            window.successes += counts.successes
            window.output_tokens += counts.output_tokens
        self.max_windows = min(self.max_windows, other.max_windows)
        self._trim()

    def copy(self) -> ThroughputWindows:
        clone = ThroughputWindows(self.window_ns, self.max_windows)
        clone.merge(self)
        return clone

    def summary(self) -> dict[str, dict[str, float | int | None]]:
        seconds = self.window_ns / 1e9
        ordered = [self.windows[key] for key in sorted(self.windows)]
        return {
            "rps": quantile_summary([window.requests / seconds for window in ordered]),
            "tps": quantile_summary([window.output_tokens / seconds for window in ordered]),
            "goodput": quantile_summary([window.successes / seconds for window in ordered]),
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "window_ns": self.window_ns,
            "max_windows": self.max_windows,
            "windows": {
                str(key): [counts.requests, counts.successes, counts.output_tokens]
                for key, counts in sorted(self.windows.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ThroughputWindows:
        windows = cls(int(data.get("window_ns", 1_000_000_000)), int(data.get("max_windows", 3600)))
        raw = data.get("windows") or {}
        if not isinstance(raw, dict):
            raise ValueError("windows must be a mapping")
        for key, values in raw.items():
            requests, successes, output_tokens = (int(value) for value in values)
            windows.windows[int(key)] = WindowCounts(requests, successes, output_tokens)
        windows._trim()
        return windows

    def _trim(self) -> None:
        overflow = len(self.windows) - self.max_windows
        if overflow <= 0:
            return
        for key in sorted(self.windows)[:overflow]:
            del self.windows[key]
