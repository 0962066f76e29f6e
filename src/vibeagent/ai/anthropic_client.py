"""Streaming client for Anthropic's Messages API.

The run loop builds OpenAI-style chat messages. This client folds system
turns into the ``system`` parameter and merges consecutive turns of the same
role, since the Messages API expects alternating user and assistant turns.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import anthropic
import httpx
from anthropic import AsyncAnthropic

from .client import AIClient, ClientSettings

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    anthropic.APIError,
    anthropic.APIStatusError,
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    httpx.TimeoutException,
)


class AnthropicClient(AIClient):
    """Same streaming and retry contract as :class:`AIClient`, over Claude models."""

    transport_errors = (anthropic.APIError, httpx.HTTPError)
    retryable_errors = _RETRYABLE_ERRORS

    def _build_client(self, settings: ClientSettings) -> AsyncAnthropic:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncAnthropic(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _stream_manager(self, payload: Dict[str, Any]) -> Any:
        return self._client.messages.stream(**payload)

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[Any],
        temperature: float | None,
        metadata: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        system, turns = split_system_prompt(messages)
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": turns,
            "max_tokens": self._settings.max_output_tokens,
        }
        if system:
            payload["system"] = system
        if temperature is not None:
            payload["temperature"] = temperature
        if metadata or self._settings.metadata:
            # The Messages API only accepts a user id as metadata.
            LOGGER.debug("Dropping request metadata unsupported by the Messages API")
        return payload

    @staticmethod
    def _content_delta(event: Any) -> str | None:
        if getattr(event, "type", None) != "text":
            return None
        text = getattr(event, "text", None)
        return str(text) if text else None


def split_system_prompt(messages: Iterable[Mapping[str, Any]]) -> tuple[str, List[Dict[str, str]]]:
    """Return ``(system, turns)`` with same-role neighbours merged."""
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for message in messages:
        role = str(message.get("role", "user"))
        content = str(message.get("content") or "")
        if role == "system":
            system_parts.append(content)
            continue
        if role != "assistant":
            role = "user"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] = f"{turns[-1]['content']}\n\n{content}"
        else:
            turns.append({"role": role, "content": content})
    return "\n\n".join(part for part in system_parts if part), turns


__all__ = ["AnthropicClient", "split_system_prompt"]
