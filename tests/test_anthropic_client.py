"""Tests for the Anthropic streaming client and provider selection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import anthropic
import httpx
import pytest

from vibeagent.ai.anthropic_client import AnthropicClient, split_system_prompt
from vibeagent.ai.client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry
from vibeagent.ai.providers import create_model_client, supported_providers
from vibeagent.ai.tools.errors import ModelTransportError
from vibeagent.services.settings import Settings

_REQUEST = httpx.Request("POST", "http://local/v1/messages")


@dataclass
class _FakeEvent:
    type: str
    text: str | None = None


class _FakeStream:
    def __init__(self, events: Iterable[_FakeEvent | BaseException]):
        self._iterator = iter(list(events))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        try:
            item = next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc
        if isinstance(item, BaseException):
            raise item
        return item


class _FakeStreamContext:
    def __init__(self, owner: "_FakeMessages", events: list[_FakeEvent | BaseException]):
        self._owner = owner
        self._events = events

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._owner.closed += 1
        return False


class _FakeMessages:
    def __init__(self, events: Iterable[_FakeEvent | BaseException], *, failures: int = 0):
        self._events = list(events)
        self._failures = failures
        self.calls: list[dict[str, Any]] = []
        self.closed = 0

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        if self._failures:
            self._failures -= 1
            raise anthropic.APIConnectionError(request=_REQUEST)
        return _FakeStreamContext(self, self._events)


class _FakeAnthropic:
    def __init__(self, messages: _FakeMessages) -> None:
        self.messages = messages
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _make_client(
    events: Iterable[_FakeEvent | BaseException],
    *,
    failures: int = 0,
    **settings: Any,
) -> tuple[AnthropicClient, _FakeMessages]:
    messages = _FakeMessages(events, failures=failures)
    registry = TokenCounterRegistry()
    registry.register("claude-stub", ApproxByteCounter(model_name="claude-stub"))
    options: dict[str, Any] = {
        "base_url": None,
        "api_key": "test",
        "model": "claude-stub",
        "provider": "anthropic",
        "retry_min_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    options.update(settings)
    client = AnthropicClient(ClientSettings(**options), client=_FakeAnthropic(messages), token_registry=registry)
    return client, messages


async def _collect(client: AIClient, messages: list[dict[str, Any]]) -> list[str]:
    return [text async for text in client.generate(messages)]


@pytest.fixture
def shared_registry(monkeypatch: pytest.MonkeyPatch) -> TokenCounterRegistry:
    registry = TokenCounterRegistry()
    for model in ("claude-stub", "gpt-stub"):
        registry.register(model, ApproxByteCounter(model_name=model))
    monkeypatch.setattr(TokenCounterRegistry, "_shared", registry)
    return registry


@pytest.mark.asyncio
async def test_generate_streams_text_events_with_system_split_out() -> None:
    events = [
        _FakeEvent(type="message_start"),
        _FakeEvent(type="text", text="<response>Hel"),
        _FakeEvent(type="content_block_delta"),
        _FakeEvent(type="text", text=""),
        _FakeEvent(type="text", text="lo</response>"),
        _FakeEvent(type="message_stop"),
    ]
    client, messages = _make_client(events, max_output_tokens=512, temperature=0.3)

    chunks = await _collect(
        client,
        [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "Hi"},
        ],
    )

    assert chunks == ["<response>Hel", "lo</response>"]
    call = messages.calls[0]
    assert call["system"] == "You are helpful."
    assert call["messages"] == [{"role": "user", "content": "Hi"}]
    assert call["max_tokens"] == 512
    assert call["temperature"] == 0.3
    assert "metadata" not in call
    assert messages.closed == 1


@pytest.mark.asyncio
async def test_stream_establishment_is_retried() -> None:
    client, messages = _make_client([_FakeEvent(type="text", text="ok")], failures=2, max_retries=3)

    assert await _collect(client, [{"role": "user", "content": "Hi"}]) == ["ok"]
    assert len(messages.calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transport_error() -> None:
    client, messages = _make_client([], failures=5, max_retries=2)

    with pytest.raises(ModelTransportError):
        await _collect(client, [{"role": "user", "content": "Hi"}])
    assert len(messages.calls) == 2


@pytest.mark.asyncio
async def test_mid_stream_failure_is_a_transport_error() -> None:
    events = [_FakeEvent(type="text", text="<thought>"), anthropic.APIConnectionError(request=_REQUEST)]
    client, messages = _make_client(events)
    seen: list[str] = []

    with pytest.raises(ModelTransportError):
        async for text in client.generate([{"role": "user", "content": "Hi"}]):
            seen.append(text)

    assert seen == ["<thought>"]
    assert len(messages.calls) == 1
    assert messages.closed == 1


def test_split_system_prompt_merges_same_role_turns() -> None:
    system, turns = split_system_prompt(
        [
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "question"},
            {"role": "assistant", "content": "<tool_call>{}</tool_call>"},
            {"role": "user", "content": "<observation>{}</observation>"},
            {"role": "user", "content": "more"},
            {"role": "system", "content": "late rule"},
        ]
    )

    assert system == "rules\n\nlate rule"
    assert turns == [
        {"role": "user", "content": "question"},
        {"role": "assistant", "content": "<tool_call>{}</tool_call>"},
        {"role": "user", "content": "<observation>{}</observation>\n\nmore"},
    ]


# -----------------------------------------------------------------------------
# Provider selection
# -----------------------------------------------------------------------------


@pytest.mark.usefixtures("shared_registry")
def test_provider_factory_picks_client_class() -> None:
    anthropic_client = create_model_client(Settings(provider="anthropic", api_key="k", model="claude-stub"))
    openai_client = create_model_client(Settings(api_key="k", model="gpt-stub"))

    assert type(anthropic_client) is AnthropicClient
    assert type(openai_client) is AIClient
    assert anthropic_client.settings.max_output_tokens == 4096
    assert supported_providers() == ("openai", "anthropic")


def test_unknown_provider_is_rejected() -> None:
    settings = ClientSettings(base_url=None, api_key="k", model="m", provider="mistral")
    with pytest.raises(ValueError, match="Unknown model provider"):
        create_model_client(settings)
