from __future__ import annotations

from pathlib import Path
import sys
from types import SimpleNamespace
from typing import Any, Iterator

import litellm
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from backends import LiteLLMBackend, failure_event_for_exception
from clock import Clock
from providers import ProviderConfig
from records import ErrorKind, EventKind, RequestSpec
from timing import TimingEngine


class StatusError(Exception):
    def __init__(self, status_code: int, headers: dict[str, str] | None = None) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code
        self.response = SimpleNamespace(headers=headers or {})


def _spec(backend: str = "openai", **extra: Any) -> RequestSpec:
    return RequestSpec(
        request_id="req-1",
        backend=backend,
        model="gpt-4o-mini",
        prompt="hello",
        max_tokens=16,
        extra_params=extra,
    )


def _chunks(*texts: str, usage: dict[str, int] | None = None) -> Iterator[dict[str, Any]]:
    for text in texts:
        yield {"choices": [{"delta": {"content": text}}]}
    if usage is not None:
        yield {"choices": [], "usage": usage}


@pytest.fixture
def backend() -> LiteLLMBackend:
    return LiteLLMBackend({"openai": ProviderConfig(name="openai", model="gpt-4o-mini", timeout_s=20.0)})


def test_streamed_chunks_become_ordered_events(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    captured: dict[str, Any] = {}

    def fake_completion(**kwargs: Any) -> Iterator[dict[str, Any]]:
        captured.update(kwargs)
        return _chunks("Hel", "", "lo", usage={"prompt_tokens": 7, "completion_tokens": 2})

    monkeypatch.setattr(litellm, "completion", fake_completion)

    events = list(backend.issue(_spec(top_p=0.5), timeout_s=5.0))

    assert [event.kind for event in events] == [
        EventKind.DISPATCHED,
        EventKind.FIRST_BYTE,
        EventKind.TOKEN,
        EventKind.TOKEN,
        EventKind.COMPLETED,
    ]
    assert [event.text for event in events if event.kind is EventKind.TOKEN] == ["Hel", "lo"]
    assert [event.token_index for event in events if event.kind is EventKind.TOKEN] == [0, 1]
    assert events[-1].input_tokens == 7
    assert events[-1].output_tokens == 2
    assert captured["stream"] is True
    assert captured["timeout"] == 5.0
    assert captured["max_tokens"] == 16
    assert captured["top_p"] == 0.5


def test_output_tokens_fall_back_to_token_counter(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    monkeypatch.setattr(litellm, "completion", lambda **kwargs: _chunks("a", "b", "c"))
    monkeypatch.setattr(litellm, "token_counter", lambda **kwargs: 9)

    events = list(backend.issue(_spec(), timeout_s=None))

    assert events[-1].kind is EventKind.COMPLETED
    assert events[-1].output_tokens == 9


def test_token_counter_failure_uses_chunk_count(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    def broken_counter(**kwargs: Any) -> int:
        raise RuntimeError("no tokenizer")

    monkeypatch.setattr(litellm, "completion", lambda **kwargs: _chunks("a", "b"))
    monkeypatch.setattr(litellm, "token_counter", broken_counter)

    events = list(backend.issue(_spec(), timeout_s=None))

    assert events[-1].output_tokens == 2


def test_events_feed_the_timing_engine(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    monkeypatch.setattr(
        litellm, "completion", lambda **kwargs: _chunks("x", "y", usage={"prompt_tokens": 1, "completion_tokens": 2})
    )

    result = TimingEngine(Clock()).run_attempt(backend.issue(_spec(), timeout_s=None))

    assert result.success
    assert result.timing.output_tokens == 2
    assert result.timing.ttft_ns <= result.timing.total_ns


def test_provider_error_mid_stream_is_terminal_failure(
    monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend
) -> None:
    def failing_stream(**kwargs: Any) -> Iterator[dict[str, Any]]:
        yield {"choices": [{"delta": {"content": "partial"}}]}
        raise StatusError(503)

    monkeypatch.setattr(litellm, "completion", failing_stream)

    events = list(backend.issue(_spec(), timeout_s=None))

    assert events[-1].kind is EventKind.FAILED
    assert events[-1].error_kind is ErrorKind.SERVER_ERROR
    assert events[-1].status_code == 503


def test_unknown_provider_is_client_error(backend: LiteLLMBackend) -> None:
    events = list(backend.issue(_spec(backend="missing"), timeout_s=None))
    assert [event.kind for event in events] == [EventKind.DISPATCHED, EventKind.FAILED]
    assert events[-1].error_kind is ErrorKind.CLIENT_ERROR


def test_missing_api_key_is_client_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROFILE_TEST_KEY", raising=False)
    backend = LiteLLMBackend(
        {"openai": ProviderConfig(name="openai", model="gpt-4o-mini", api_key_env="PROFILE_TEST_KEY")}
    )

    events = list(backend.issue(_spec(), timeout_s=None))

    assert events[-1].error_kind is ErrorKind.CLIENT_ERROR
    assert "PROFILE_TEST_KEY" in events[-1].message


def test_request_options_use_provider_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROFILE_TEST_KEY", "secret")
    provider = ProviderConfig(
        name="custom",
        model="my-model",
        api_base="https://llm.example.com/v1",
        api_key_env="PROFILE_TEST_KEY",
        extra_headers={"x-team": "perf"},
        temperature=0.3,
        timeout_s=2.0,
    )

    options = LiteLLMBackend._build_request_options(provider, _spec(backend="custom"), timeout_s=10.0)

    assert options["api_base"] == "https://llm.example.com/v1"
    assert options["api_key"] == "secret"
    assert options["extra_headers"] == {"x-team": "perf"}
    assert options["temperature"] == 0.3
    assert options["timeout"] == 2.0
    assert options["messages"] == [{"role": "user", "content": "hello"}]


@pytest.mark.parametrize(
    ("exc", "kind", "retry_after_s"),
    [
        (StatusError(401), ErrorKind.CLIENT_ERROR, None),
        (StatusError(429, {"retry-after": "3"}), ErrorKind.RATE_LIMITED, 3.0),
        (StatusError(429, {"retry-after": "soon"}), ErrorKind.RATE_LIMITED, None),
        (StatusError(500), ErrorKind.SERVER_ERROR, None),
        (ConnectionResetError("reset"), ErrorKind.TRANSPORT_ERROR, None),
        (TimeoutError("slow"), ErrorKind.TRANSPORT_ERROR, None),
        (RuntimeError("unexpected"), ErrorKind.TRANSPORT_ERROR, None),
    ],
)
def test_failure_event_for_exception(exc: BaseException, kind: ErrorKind, retry_after_s: float | None) -> None:
    event = failure_event_for_exception(exc)
    assert event.kind is EventKind.FAILED
    assert event.error_kind is kind
    assert event.retry_after_s == retry_after_s


class ClosableStream:
    def __init__(self, *texts: str) -> None:
        self._chunks = _chunks(*texts)
        self.closed = False

    def __iter__(self) -> "ClosableStream":
        return self

    def __next__(self) -> dict[str, Any]:
        return next(self._chunks)

    def close(self) -> None:
        self.closed = True


def test_abandoned_attempt_closes_provider_stream(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    stream = ClosableStream("a", "b", "c")
    monkeypatch.setattr(litellm, "completion", lambda **kwargs: stream)

    events = backend.issue(_spec(), timeout_s=None)
    assert next(events).kind is EventKind.DISPATCHED
    assert next(events).kind is EventKind.FIRST_BYTE
    events.close()

    assert stream.closed


def test_finished_attempt_closes_provider_stream(monkeypatch: pytest.MonkeyPatch, backend: LiteLLMBackend) -> None:
    stream = ClosableStream("a")
    monkeypatch.setattr(litellm, "completion", lambda **kwargs: stream)
    monkeypatch.setattr(litellm, "token_counter", lambda **kwargs: 1)

    events = list(backend.issue(_spec(), timeout_s=None))

    assert events[-1].kind is EventKind.COMPLETED
    assert stream.closed
