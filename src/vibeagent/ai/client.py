"""Async model client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Protocol, Sequence, cast

import httpx
import tiktoken
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .tools.errors import ModelTransportError

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        ...

    def estimate(self, text: str) -> int:
        ...


class ModelClient(Protocol):
    """The generation capability the run loop depends on."""

    def generate(self, messages: Sequence[ChatCompletionMessageParam]) -> AsyncIterator[str]:
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str | None
    api_key: str
    model: str
    provider: str = "openai"
    organization: str | None = None
    temperature: float | None = 0.2
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False
    max_output_tokens: int = 4096

    @classmethod
    def from_settings(cls, settings: Any) -> "ClientSettings":
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            provider=settings.provider,
            organization=settings.organization,
            temperature=settings.temperature,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers or {}),
            metadata=dict(settings.metadata or {}),
            debug_logging=settings.debug_logging,
            max_output_tokens=settings.max_output_tokens,
        )


class AIClient:
    """Async client that streams plain text fragments with retry semantics.

    Only establishing the stream is retried. Once the first fragment has been
    handed to the caller a failure surfaces as :class:`ModelTransportError`,
    because the caller may already have acted on the partial output.
    """

    transport_errors: tuple[type[BaseException], ...] = (APIError, httpx.HTTPError)
    retryable_errors: tuple[type[BaseException], ...] = _RETRYABLE_ERRORS

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: Any | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def generate(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        temperature: float | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> AsyncIterator[str]:
        """Stream the completion for ``messages`` as text fragments."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            temperature=temperature if temperature is not None else self._settings.temperature,
            metadata=metadata,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async with AsyncExitStack() as stack:
            try:
                stream = await self._open_stream(stack, payload)
            except self.transport_errors as exc:
                raise ModelTransportError(f"Model request failed: {exc}", cause=exc) from exc
            try:
                async for event in stream:
                    text = self._content_delta(event)
                    if text:
                        yield text
            except self.transport_errors as exc:
                raise ModelTransportError(f"Model stream interrupted: {exc}", cause=exc) from exc

    async def _open_stream(self, stack: AsyncExitStack, payload: Dict[str, Any]) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await stack.enter_async_context(self._stream_manager(payload))
        raise ModelTransportError("Model request was not attempted")  # pragma: no cover

    def _stream_manager(self, payload: Dict[str, Any]) -> Any:
        return self._client.chat.completions.stream(**payload)

    def _build_client(self, settings: ClientSettings) -> Any:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        return counter.count(text)

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except Exception as exc:  # pragma: no cover - encoding download can fail offline
            LOGGER.warning("Failed to load tiktoken encoding for %s: %s", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self._token_registry.register(model_name, counter)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(self.retryable_errors),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        temperature: float | None,
        metadata: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    @staticmethod
    def _content_delta(event: ChatCompletionStreamEvent[Any]) -> str | None:
        if getattr(event, "type", None) != "content.delta":
            return None
        delta = getattr(event, "delta", None)
        return str(delta) if delta else None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


__all__ = [
    "AIClient",
    "ApproxByteCounter",
    "ClientSettings",
    "ModelClient",
    "TiktokenCounter",
    "TokenCounterProtocol",
    "TokenCounterRegistry",
]
