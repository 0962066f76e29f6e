"""Prompt assembly and token budgeting for each model turn."""

from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from openai.types.chat import ChatCompletionMessageParam

from .. import prompts
from ..tools.registry import ToolCatalogue
from .types import Conversation, Message

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[CONTENT TRUNCATED]"
TRUNCATION_BOUNDARY_RATIO = 0.8
MAX_TITLE_CHARS = 500
_MESSAGE_OVERHEAD_TOKENS = 4

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_CONTENT_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")
_MARKER_RE = re.compile(r"\[(START|END) TAB CONTEXT:")
_ROLE_PREFIX_RE = re.compile(r"^(system|assistant|user):", re.IGNORECASE | re.MULTILINE)
_EXCESS_NEWLINES_RE = re.compile(r"\n{4,}")


class TokenCounter(Protocol):
    def count_tokens(self, text: str) -> int:
        ...


@dataclass(slots=True, frozen=True)
class TabContext:
    """Content of a browser tab the user referenced by alias.

    ``content`` of ``None`` means the tab could not be found.
    """

    alias: str
    url: str = ""
    title: str = ""
    content: str | None = None

    @property
    def found(self) -> bool:
        return self.content is not None

    @property
    def label(self) -> str:
        alias = self.alias.strip()
        return alias if alias.startswith("@") else f"@{alias}"


@dataclass(slots=True)
class MessagePlan:
    """Messages for one generation plus bookkeeping for logs and tests."""

    messages: list[ChatCompletionMessageParam]
    prompt_tokens: int
    history_messages: int = 0
    tabs_included: int = 0
    tab_errors: tuple[str, ...] = ()


# -----------------------------------------------------------------------------
# Sanitizers
# -----------------------------------------------------------------------------


def sanitize_url(url: str) -> str:
    return _CONTROL_RE.sub("", url or "").strip()


def sanitize_text(text: str, limit: int = MAX_TITLE_CHARS) -> str:
    cleaned = (text or "").replace("\r", " ").replace("\n", " ")
    cleaned = _CONTROL_RE.sub("", cleaned).strip()
    return cleaned[:limit]


def sanitize_content(content: str) -> str:
    """Neutralize tab content before it is placed in the prompt.

    Strips lone surrogates and control characters (newline and tab survive),
    escapes role prefixes at line start so page text cannot pose as a chat
    turn, and collapses runs of blank lines.
    """
    text = _SURROGATE_RE.sub("", content or "")
    text = unicodedata.normalize("NFC", text)
    text = _CONTENT_CONTROL_RE.sub("", text)
    text = _MARKER_RE.sub(lambda match: f"\\[{match.group(1)} TAB CONTEXT:", text)
    text = _ROLE_PREFIX_RE.sub(lambda match: f"\\{match.group(1)}:", text)
    return _EXCESS_NEWLINES_RE.sub("\n\n\n", text)


def truncate_content(content: str, max_chars: int) -> str:
    """Cut ``content`` to ``max_chars`` at a paragraph or sentence boundary if one is near."""
    if len(content) <= max_chars:
        return content
    head = content[:max_chars]
    threshold = max_chars * TRUNCATION_BOUNDARY_RATIO
    paragraph = head.rfind("\n\n")
    sentence = head.rfind(". ")
    if paragraph > threshold:
        head = head[:paragraph]
    elif sentence > threshold:
        head = head[: sentence + 1]
    return head + TRUNCATION_MARKER


def format_tool_entry(entry: Any) -> str:
    description = entry.description or ""
    if entry.server:
        description = f"{description} (from {entry.server} server)"
    schema = json.dumps(dict(entry.parameters), indent=2, ensure_ascii=False)
    return (
        "<tool>\n"
        f"<name>{entry.name}</name>\n"
        f"<description>{description}</description>\n"
        f"<parameters_json_schema>{schema}</parameters_json_schema>\n"
        "</tool>"
    )


# -----------------------------------------------------------------------------
# Message Builder
# -----------------------------------------------------------------------------


class MessageBuilder:
    """Builds the chat messages for one generation within a token budget.

    The layout is: system prompt, an optional tab-context system message,
    trimmed conversation memory, then the current run's turns.
    """

    def __init__(
        self,
        counter: TokenCounter | None = None,
        *,
        context_token_budget: int = 96_000,
        max_tokens_per_tab: int = prompts.MAX_TOKENS_PER_TAB,
        max_total_tab_tokens: int = prompts.MAX_TOTAL_TAB_TOKENS,
    ) -> None:
        if context_token_budget <= 0:
            raise ValueError("context_token_budget must be positive")
        self._counter = counter
        self._context_token_budget = int(context_token_budget)
        self._max_tab_chars = max(1, int(max_tokens_per_tab)) * prompts.CHARS_PER_TOKEN
        self._max_total_tab_chars = max(1, int(max_total_tab_tokens)) * prompts.CHARS_PER_TOKEN
        self._tools_cache: tuple[ToolCatalogue, str] | None = None

    @property
    def context_token_budget(self) -> int:
        return self._context_token_budget

    def clear_tool_cache(self) -> None:
        self._tools_cache = None

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def format_tools(self, catalogue: ToolCatalogue | None) -> str:
        """Render the catalogue for the ``<tools>`` block; cached per catalogue."""
        if not catalogue:
            return prompts.NO_TOOLS_TEXT
        cached = self._tools_cache
        if cached is not None and cached[0] is catalogue:
            return cached[1]
        text = "\n\n".join(format_tool_entry(entry) for entry in catalogue)
        self._tools_cache = (catalogue, text)
        return text

    def system_prompt(self, catalogue: ToolCatalogue | None, *, has_tabs: bool = False) -> str:
        return prompts.react_system_prompt(self.format_tools(catalogue), has_tabs=has_tabs)

    def format_tabs(self, tabs: Sequence[TabContext]) -> tuple[str | None, list[str]]:
        """Return the tab-context section (or None) and the errors to show the model."""
        errors: list[str] = []
        blocks: list[str] = []
        used_chars = 0
        for tab in tabs:
            if not tab.found:
                errors.append(f"Tab with alias {tab.label} not found")
                continue
            content = truncate_content(sanitize_content(tab.content or ""), self._max_tab_chars)
            if used_chars + len(content) > self._max_total_tab_chars:
                LOGGER.warning("Dropping tab %s: total tab context budget exhausted", tab.label)
                errors.append(f"Tab with alias {tab.label} exceeds the remaining context budget")
                continue
            used_chars += len(content)
            blocks.append(
                f"=== TAB CONTENT: {tab.label} ===\n"
                f"URL: {sanitize_url(tab.url)}\n"
                f"Title: {sanitize_text(tab.title)}\n"
                f"Content:\n{content}\n"
                "=== END TAB CONTENT ==="
            )
        if not blocks:
            return None, errors
        section = f"{prompts.TAB_SECTION_HEADER}\n\n" + "\n\n".join(blocks) + "\n"
        return section, errors

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def build_messages(
        self,
        conversation: Conversation,
        catalogue: ToolCatalogue | None,
        *,
        history: Sequence[Message] = (),
        tabs: Sequence[TabContext] = (),
    ) -> MessagePlan:
        """Assemble the prompt for the next generation of a run.

        The run's own turns are always kept whole; older memory is dropped
        oldest-first once the token budget is spent.
        """
        tab_section, tab_errors = self.format_tabs(tabs)
        messages: list[ChatCompletionMessageParam] = [
            {"role": "system", "content": self.system_prompt(catalogue, has_tabs=tab_section is not None)}
        ]
        if tab_section is not None:
            messages.append({"role": "system", "content": tab_section})

        turns = [message.to_chat_param() for message in conversation]
        if tab_errors and turns and turns[0].get("role") == "user":
            first = dict(turns[0])
            first["content"] = f"{first.get('content', '')}\n\n[ERRORS: {'; '.join(tab_errors)}]"
            turns[0] = first  # type: ignore[assignment]

        fixed_tokens = sum(self.estimate_message_tokens(message) for message in messages)
        fixed_tokens += sum(self.estimate_message_tokens(message) for message in turns)
        history_budget = max(0, self._context_token_budget - fixed_tokens)
        trimmed = self.trim_history(history, token_budget=history_budget)

        messages.extend(trimmed)
        messages.extend(turns)
        prompt_tokens = fixed_tokens + sum(self.estimate_message_tokens(message) for message in trimmed)
        if prompt_tokens > self._context_token_budget:
            LOGGER.warning(
                "Prompt needs ~%d tokens which exceeds the %d token budget",
                prompt_tokens,
                self._context_token_budget,
            )
        return MessagePlan(
            messages=messages,
            prompt_tokens=prompt_tokens,
            history_messages=len(trimmed),
            tabs_included=len(tabs) - len(tab_errors),
            tab_errors=tuple(tab_errors),
        )

    def trim_history(
        self,
        history: Sequence[Message],
        *,
        token_budget: int | None = None,
    ) -> list[ChatCompletionMessageParam]:
        """Keep the newest memory turns that fit in ``token_budget``."""
        sanitized: list[ChatCompletionMessageParam] = []
        for message in history:
            if message.role not in ("user", "assistant"):
                continue
            if not message.content.strip():
                continue
            sanitized.append(message.to_chat_param())
        if token_budget is None:
            return sanitized
        remaining = max(0, token_budget)
        kept: list[ChatCompletionMessageParam] = []
        for entry in reversed(sanitized):
            tokens = self.estimate_message_tokens(entry)
            if tokens > remaining:
                break
            kept.append(entry)
            remaining -= tokens
        if len(kept) < len(sanitized):
            LOGGER.debug("Trimmed %d history message(s) to fit budget", len(sanitized) - len(kept))
        kept.reverse()
        return kept

    def estimate_message_tokens(self, message: Any) -> int:
        content = str(message.get("content", "") or "")
        tokens = self.estimate_text_tokens(content)
        if message.get("role"):
            tokens += _MESSAGE_OVERHEAD_TOKENS
        return tokens

    def estimate_text_tokens(self, text: str) -> int:
        if not text:
            return 0
        counter_fn = getattr(self._counter, "count_tokens", None)
        if callable(counter_fn):
            try:
                return int(counter_fn(text))
            except Exception:  # pragma: no cover - defensive fallback
                LOGGER.debug("Token counter failed; using heuristic", exc_info=True)
        byte_length = len(text.encode("utf-8", errors="ignore"))
        return max(1, math.ceil(byte_length / prompts.CHARS_PER_TOKEN))


__all__ = [
    "MessageBuilder",
    "MessagePlan",
    "TabContext",
    "TokenCounter",
    "TRUNCATION_MARKER",
    "format_tool_entry",
    "sanitize_content",
    "sanitize_text",
    "sanitize_url",
    "truncate_content",
]
