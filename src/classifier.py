from __future__ import annotations

from dataclasses import dataclass
import logging
import random

from records import AttemptResult, ErrorKind, RetryPolicy


logger = logging.getLogger(__name__)

RETRYABLE_ERROR_KINDS = frozenset(
    {ErrorKind.TRANSPORT_ERROR, ErrorKind.SERVER_ERROR, ErrorKind.RATE_LIMITED}
)


@dataclass(frozen=True, slots=True)
class Retry:
    after_s: float


@dataclass(frozen=True, slots=True)
class GiveUp:
    error_kind: ErrorKind


RetryDecision = Retry | GiveUp


def error_kind_for_status(status_code: int) -> ErrorKind | None:
    """Map an HTTP status to an error kind; ``None`` for non-error statuses."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if 500 <= status_code <= 599:
        return ErrorKind.SERVER_ERROR
    if 400 <= status_code <= 499:
        return ErrorKind.CLIENT_ERROR
    return None


class OutcomeClassifier:
    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None) -> None:
        self.policy = policy
        self.rng = rng or random.Random()

    def classify(self, result: AttemptResult, attempt_index: int) -> RetryDecision:
        if result.success:
            raise ValueError("classify() expects a failed attempt")

        error_kind = result.error_kind or ErrorKind.TRANSPORT_ERROR
        if error_kind not in RETRYABLE_ERROR_KINDS:
            return GiveUp(error_kind)
        if attempt_index + 1 >= self.policy.max_attempts:
            logger.debug(
                "Giving up after %d attempt(s), last error %s",
                attempt_index + 1,
                error_kind.value,
            )
            return GiveUp(ErrorKind.RETRIES_EXHAUSTED)
        return Retry(self.backoff_delay(attempt_index, retry_after_s=result.retry_after_s))

    def backoff_delay(self, attempt_index: int, retry_after_s: float | None = None) -> float:
        policy = self.policy
        base = min(policy.max_backoff_s, policy.initial_backoff_s * policy.multiplier**attempt_index)
        if policy.jitter:
            base *= 1.0 + self.rng.uniform(-policy.jitter, policy.jitter)
        if policy.honor_retry_after and retry_after_s is not None and retry_after_s > base:
            base = min(retry_after_s, policy.max_backoff_s)
        return max(base, 0.0)
