from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class ErrorKind(str, Enum):
    TRANSPORT_ERROR = "transport_error"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    CLIENT_ERROR = "client_error"
    MALFORMED_EVENT_ORDER = "malformed_event_order"
    RETRIES_EXHAUSTED = "retries_exhausted"
    TIMEOUT = "timeout"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    DISPATCHED = "dispatched"
    FIRST_BYTE = "first_byte"
    TOKEN = "token"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_EVENT_KINDS = frozenset({EventKind.COMPLETED, EventKind.FAILED})


@dataclass(frozen=True, slots=True)
class RequestSpec:
    request_id: str
    backend: str
    model: str
    prompt: str
    max_tokens: int | None = None
    temperature: float | None = None
    extra_params: Mapping[str, object] = field(default_factory=dict)
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        # Freeze the mapping so specs can be shared across threads.
        object.__setattr__(self, "extra_params", MappingProxyType(dict(self.extra_params)))


@dataclass(frozen=True, slots=True)
class Attempt:
    index: int
    spec: RequestSpec
    started_at_ns: int


@dataclass(frozen=True, slots=True)
class BackendEvent:
    """Raw, unstamped signal yielded by a Backend."""

    kind: EventKind
    text: str = ""
    token_index: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    status_code: int | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    retry_after_s: float | None = None

    @classmethod
    def dispatched(cls) -> "BackendEvent":
        return cls(kind=EventKind.DISPATCHED)

    @classmethod
    def first_byte(cls) -> "BackendEvent":
        return cls(kind=EventKind.FIRST_BYTE)

    @classmethod
    def token(cls, index: int, text: str = "") -> "BackendEvent":
        return cls(kind=EventKind.TOKEN, token_index=index, text=text)

    @classmethod
    def completed(
        cls, input_tokens: int | None = None, output_tokens: int | None = None
    ) -> "BackendEvent":
        return cls(
            kind=EventKind.COMPLETED,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @classmethod
    def failed(
        cls,
        error_kind: ErrorKind,
        message: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> "BackendEvent":
        return cls(
            kind=EventKind.FAILED,
            error_kind=error_kind,
            message=message,
            status_code=status_code,
            retry_after_s=retry_after_s,
        )


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    kind: EventKind
    at_ns: int
    token_index: int | None = None


@dataclass(frozen=True, slots=True)
class TimingSample:
    ttft_ns: int | None
    total_ns: int
    inter_token_ns: tuple[int, ...] = ()
    input_tokens: int | None = None
    output_tokens: int = 0

    @property
    def tokens_per_second(self) -> float | None:
        if self.output_tokens <= 0 or self.total_ns <= 0:
            return None
        return self.output_tokens / (self.total_ns / 1e9)


@dataclass(frozen=True, slots=True)
class AttemptResult:
    success: bool
    timing: TimingSample | None
    error_kind: ErrorKind | None = None
    status_code: int | None = None
    message: str | None = None
    retry_after_s: float | None = None


@dataclass(frozen=True, slots=True)
class Outcome:
    request_id: str
    status: OutcomeStatus
    attempts: int
    backend: str
    model: str
    completed_at_ns: int
    error_kind: ErrorKind | None = None
    last_error_kind: ErrorKind | None = None
    message: str | None = None
    timing: TimingSample | None = None
    backoff_delays_s: tuple[float, ...] = ()

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_s: float = 0.1
    multiplier: float = 2.0
    max_backoff_s: float = 10.0
    jitter: float = 0.1
    honor_retry_after: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_s < 0:
            raise ValueError("initial_backoff_s must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_backoff_s < self.initial_backoff_s:
            raise ValueError("max_backoff_s must be >= initial_backoff_s")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")


@dataclass(frozen=True, slots=True)
class RunConfig:
    iterations: int
    concurrency: int = 1
    rate_limit_rps: float | None = None
    burst: int = 1
    warmup: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_s: float | None = None
    run_deadline_s: float | None = None
    stall_timeout_s: float | None = None
    workers: int | None = None
    poll_interval_s: float = 0.01

    def __post_init__(self) -> None:
        if self.iterations < 0:
            raise ValueError("iterations must be >= 0")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.rate_limit_rps is not None and self.rate_limit_rps <= 0:
            raise ValueError("rate_limit_rps must be > 0")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")
        if self.warmup < 0:
            raise ValueError("warmup must be >= 0")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if self.run_deadline_s is not None and self.run_deadline_s <= 0:
            raise ValueError("run_deadline_s must be > 0")
        if self.stall_timeout_s is not None and self.stall_timeout_s <= 0:
            raise ValueError("stall_timeout_s must be > 0")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")

    def worker_count(self, request_count: int) -> int:
        # Workers sleeping in backoff hold no slot, so run more of them than the cap.
        requested = self.workers if self.workers is not None else self.concurrency * 2
        return max(1, min(requested, request_count))
