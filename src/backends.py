from __future__ import annotations

import logging
import os
from typing import Iterator, Mapping, Protocol

from classifier import error_kind_for_status
from providers import ProviderConfig
from records import BackendEvent, ErrorKind, RequestSpec


logger = logging.getLogger(__name__)


class Backend(Protocol):
    def issue(self, spec: RequestSpec, timeout_s: float | None) -> Iterator[BackendEvent]:
        """Start one attempt and yield its events.

        The iterator is finite and single-use, and transport or protocol
        errors must arrive as a terminal ``FAILED`` event.
        """
        ...


def _configure_litellm() -> None:
    import litellm

    # Keep profiler output clean by hiding LiteLLM guidance banners in error paths.
    litellm.suppress_debug_info = True


def _extract_text_from_chunk(chunk: object) -> str:
    # Supports both dict-style and object-style chunk payloads.
    if isinstance(chunk, dict):
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        first_choice = choices[0] or {}
        delta = first_choice.get("delta", {}) or {}
        content = delta.get("content")
        if content is None:
            content = first_choice.get("text")
        return str(content or "")

    choices = getattr(chunk, "choices", None)
    if not choices:
        return ""
    first_choice = choices[0]
    delta = getattr(first_choice, "delta", None)
    content = getattr(delta, "content", None) if delta is not None else None
    if content is None:
        content = getattr(first_choice, "text", None)
    return str(content or "")


def _extract_usage(chunk: object) -> tuple[int | None, int | None]:
    usage = chunk.get("usage") if isinstance(chunk, dict) else getattr(chunk, "usage", None)
    if not usage:
        return None, None
    if isinstance(usage, dict):
        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
    else:
        prompt_tokens = getattr(usage, "prompt_tokens", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
    return (
        int(prompt_tokens) if prompt_tokens is not None else None,
        int(completion_tokens) if completion_tokens is not None else None,
    )


def _retry_after_s(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def failure_event_for_exception(exc: BaseException) -> BackendEvent:
    """Translate a LiteLLM (or plain transport) exception into a terminal event."""
    import litellm

    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, (litellm.Timeout, litellm.APIConnectionError, ConnectionError, TimeoutError)):
        return BackendEvent.failed(ErrorKind.TRANSPORT_ERROR, message=message)

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        error_kind = error_kind_for_status(status_code)
        if error_kind is not None:
            return BackendEvent.failed(
                error_kind,
                message=message,
                status_code=status_code,
                retry_after_s=_retry_after_s(exc) if error_kind is ErrorKind.RATE_LIMITED else None,
            )
    return BackendEvent.failed(ErrorKind.TRANSPORT_ERROR, message=message)


class LiteLLMBackend:
    """Streams chat completions through LiteLLM for any configured provider."""

    def __init__(self, providers: Mapping[str, ProviderConfig]) -> None:
        self.providers = dict(providers)

    def issue(self, spec: RequestSpec, timeout_s: float | None) -> Iterator[BackendEvent]:
        provider = self.providers.get(spec.backend)
        if provider is None:
            yield BackendEvent.dispatched()
            yield BackendEvent.failed(ErrorKind.CLIENT_ERROR, message=f"Unknown provider {spec.backend!r}")
            return

        try:
            request_options = self._build_request_options(provider, spec, timeout_s)
        except ValueError as exc:
            yield BackendEvent.dispatched()
            yield BackendEvent.failed(ErrorKind.CLIENT_ERROR, message=str(exc))
            return

        _configure_litellm()
        from litellm import completion

        yield BackendEvent.dispatched()
        token_texts: list[str] = []
        input_tokens: int | None = None
        output_tokens: int | None = None
        first_chunk = True
        stream = None
        try:
            stream = completion(**request_options)
            for chunk in stream:
                if first_chunk:
                    first_chunk = False
                    yield BackendEvent.first_byte()
                chunk_input, chunk_output = _extract_usage(chunk)
                if chunk_input is not None:
                    input_tokens = chunk_input
                if chunk_output is not None:
                    output_tokens = chunk_output
                token_text = _extract_text_from_chunk(chunk)
                if token_text:
                    yield BackendEvent.token(len(token_texts), token_text)
                    token_texts.append(token_text)
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s: provider %s failed: %s", spec.request_id, provider.name, exc)
            yield failure_event_for_exception(exc)
            return
        finally:
            # Also runs on GeneratorExit when the consumer abandons the attempt.
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    close()
                except Exception:  # noqa: BLE001
                    logger.debug("%s: closing provider stream failed", spec.request_id, exc_info=True)

        if output_tokens is None:
            output_tokens = self._count_output_tokens(provider, "".join(token_texts), len(token_texts))
        yield BackendEvent.completed(input_tokens=input_tokens, output_tokens=output_tokens)

    @staticmethod
    def _build_request_options(
        provider: ProviderConfig, spec: RequestSpec, timeout_s: float | None
    ) -> dict[str, object]:
        request_options: dict[str, object] = {
            "model": spec.model or provider.model,
            "messages": [{"role": "user", "content": spec.prompt}],
            "stream": True,
        }

        if provider.api_base:
            request_options["api_base"] = provider.api_base
        if provider.api_key_env:
            api_key = os.getenv(provider.api_key_env)
            if not api_key:
                raise ValueError(f"Missing API key from environment variable {provider.api_key_env!r}")
            request_options["api_key"] = api_key
        if provider.extra_headers:
            request_options["extra_headers"] = provider.extra_headers

        temperature = spec.temperature if spec.temperature is not None else provider.temperature
        if temperature is not None:
            request_options["temperature"] = temperature
        max_tokens = spec.max_tokens if spec.max_tokens is not None else provider.max_tokens
        if max_tokens is not None:
            request_options["max_tokens"] = max_tokens
        timeouts = [value for value in (timeout_s, provider.timeout_s) if value is not None]
        if timeouts:
            request_options["timeout"] = min(timeouts)
        request_options.update(spec.extra_params)
        return request_options

    @staticmethod
    def _count_output_tokens(provider: ProviderConfig, output_text: str, fallback_count: int) -> int:
        if not output_text:
            return 0
        try:
            _configure_litellm()
            from litellm import token_counter

            token_count = int(
                token_counter(
                    model=provider.model,
                    text=output_text,
                    count_response_tokens=True,
                )
            )
            if token_count >= 0:
                return token_count
        except Exception:  # noqa: BLE001
            logger.debug("token_counter failed for %s, using chunk count", provider.model, exc_info=True)
        return fallback_count
