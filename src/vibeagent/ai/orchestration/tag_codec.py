"""Incremental decoder for the ReAct tag protocol.

The model writes its output with a small vocabulary of XML-like tags::

    <thought>...</thought>
    <tool_call>{"name": "...", "arguments": {...}, "id": "call_001"}</tool_call>
    <response>...</response>

Fragments arrive split at arbitrary points, so the codec keeps back any
suffix that could still grow into a tag and only releases text once it is
known not to be part of one. The resulting event sequence depends on the
text alone, never on where it was split (modulo how streaming deltas are
chunked; see :func:`coalesce_deltas`).
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Sequence

from .types import (
    FinalResponse,
    Observation,
    ResponseDelta,
    StructuralEvent,
    Thought,
    ToolCall,
    Truncated,
)

__all__ = [
    "TAG_THOUGHT",
    "TAG_TOOL_CALL",
    "TAG_OBSERVATION",
    "TAG_RESPONSE",
    "PROMPT_TAGS",
    "TagCodec",
    "parse_tool_call_payload",
    "coalesce_deltas",
    "untagged_text",
]

LOGGER = logging.getLogger(__name__)

TAG_THOUGHT = "thought"
TAG_TOOL_CALL = "tool_call"
TAG_OBSERVATION = "observation"
TAG_RESPONSE = "response"

# Full vocabulary shown to the model; only the four above are decoded.
PROMPT_TAGS = ("tools", "question", TAG_THOUGHT, TAG_TOOL_CALL, TAG_OBSERVATION, TAG_RESPONSE)

_DECODED_TAGS = (TAG_THOUGHT, TAG_TOOL_CALL, TAG_OBSERVATION, TAG_RESPONSE)
_OPENERS = {f"<{tag}>": tag for tag in _DECODED_TAGS}
_CLOSERS = {f"</{tag}>": tag for tag in _DECODED_TAGS}
# Tags allowed to interrupt an unclosed <thought>.
_THOUGHT_BREAKERS = tuple(f"<{tag}>" for tag in (TAG_TOOL_CALL, TAG_OBSERVATION, TAG_RESPONSE))

_ARGUMENT_KEYS = ("arguments", "args", "parameters")
_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<body>.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_THOUGHT_BLOCK_RE = re.compile(r"<thought>.*?(?:</thought>|(?=<(?:tool_call|observation|response)>)|\Z)", re.DOTALL)
_ANY_TAG_RE = re.compile(r"</?(?:thought|tool_call|observation|response)>")


def _find_marker(buffer: str, candidates: Sequence[str]) -> tuple[int, str | None]:
    """Locate the earliest candidate marker in ``buffer``.

    Returns ``(index, marker)`` for a complete match, ``(index, None)`` when
    the buffer ends with a prefix of some candidate, and ``(-1, None)`` when
    no ``<`` in the buffer can start a candidate.
    """
    idx = buffer.find("<")
    while idx != -1:
        tail = buffer[idx:]
        for candidate in candidates:
            if tail.startswith(candidate):
                return idx, candidate
        if any(candidate.startswith(tail) for candidate in candidates):
            return idx, None
        idx = buffer.find("<", idx + 1)
    return -1, None


def _new_call_id(index: int) -> str:
    return f"call_{index:03d}"


def _loads_lenient(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Models occasionally drop the quotes around keys: {name: "echo"}.
        repaired = _BARE_KEY_RE.sub(r'\1"\2"\3', text)
        if repaired == text:
            raise
        return json.loads(repaired)


def parse_tool_call_payload(payload: str, *, index: int = 1) -> ToolCall:
    """Decode the body of a ``<tool_call>`` tag.

    Never raises; failures are reported through ``ToolCall.parse_error``.
    """
    text = payload.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group("body").strip()
    if not text:
        return ToolCall(name="", raw_arguments=payload, call_id=_new_call_id(index), parse_error="empty tool_call payload")

    try:
        decoded = _loads_lenient(text)
    except json.JSONDecodeError as exc:
        return ToolCall(
            name="",
            raw_arguments=payload,
            call_id=_new_call_id(index),
            parse_error=f"invalid JSON: {exc.msg} at line {exc.lineno} column {exc.colno}",
        )

    if not isinstance(decoded, dict):
        return ToolCall(
            name="",
            raw_arguments=payload,
            call_id=_new_call_id(index),
            parse_error="tool_call payload must be a JSON object",
        )

    raw_id = decoded.get("id")
    call_id = str(raw_id).strip() if raw_id not in (None, "") else _new_call_id(index)
    name = decoded.get("name")
    if not isinstance(name, str) or not name.strip():
        return ToolCall(
            name="",
            raw_arguments=payload,
            call_id=call_id,
            parse_error="tool_call payload is missing a string 'name'",
        )

    arguments: Any = {}
    for key in _ARGUMENT_KEYS:
        if key in decoded:
            arguments = decoded[key]
            break
    if isinstance(arguments, str):
        # OpenAI style: arguments serialized as a JSON string.
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            return ToolCall(
                name=name.strip(),
                raw_arguments=payload,
                call_id=call_id,
                parse_error="'arguments' string is not valid JSON",
            )
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return ToolCall(
            name=name.strip(),
            raw_arguments=payload,
            call_id=call_id,
            parse_error="'arguments' must be a JSON object",
        )

    return ToolCall(name=name.strip(), raw_arguments=payload, call_id=call_id, arguments=arguments)


class TagCodec:
    """Push-based decoder turning text fragments into structural events.

    Use :meth:`feed` for each fragment and :meth:`finish` once the stream
    ends, or :meth:`decode` to drive both from an async iterable. A codec is
    single-use.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._open: str | None = None
        self._payload: list[str] = []
        self._response_parts: list[str] = []
        self._responded = False
        self._finished = False
        self._calls = itertools.count(1)

    @property
    def responded(self) -> bool:
        return self._responded

    @property
    def open_tag(self) -> str | None:
        return self._open

    def feed(self, fragment: str) -> list[StructuralEvent]:
        if self._finished:
            raise RuntimeError("TagCodec has already finished")
        if not fragment or self._responded:
            return []
        self._buffer += fragment
        events: list[StructuralEvent] = []
        while self._buffer and not self._responded:
            progressed = self._step_outside(events) if self._open is None else self._step_inside(events)
            if not progressed:
                break
        if self._responded:
            self._buffer = ""
        return events

    def finish(self) -> list[StructuralEvent]:
        """Flush held text and report truncation if a tag is still open."""
        if self._finished:
            return []
        self._finished = True
        events: list[StructuralEvent] = []
        if self._responded:
            return events
        if self._open is None:
            if self._buffer:
                events.append(Thought(self._buffer))
            self._buffer = ""
            return events

        tag = self._open
        # A held partial closer is dropped; everything before it was released.
        if tag == TAG_RESPONSE:
            partial = "".join(self._response_parts)
        else:
            partial = "".join(self._payload)
        LOGGER.debug("Stream ended inside <%s> (%d chars buffered)", tag, len(partial))
        self._buffer = ""
        self._open = None
        events.append(Truncated(open_tag=tag, partial_text=partial))
        return events

    async def decode(self, fragments: AsyncIterable[str]) -> AsyncIterator[StructuralEvent]:
        async for fragment in fragments:
            for event in self.feed(fragment):
                yield event
        for event in self.finish():
            yield event

    def decode_text(self, fragments: Iterable[str]) -> list[StructuralEvent]:
        """Synchronous convenience wrapper used by tests and tooling."""
        events: list[StructuralEvent] = []
        for fragment in fragments:
            events.extend(self.feed(fragment))
        events.extend(self.finish())
        return events

    # ------------------------------------------------------------------
    # Internal state machine
    # ------------------------------------------------------------------

    def _step_outside(self, events: list[StructuralEvent]) -> bool:
        candidates = tuple(_OPENERS) + tuple(_CLOSERS)
        idx, marker = _find_marker(self._buffer, candidates)
        if idx == -1:
            events.append(Thought(self._buffer))
            self._buffer = ""
            return True
        if idx > 0:
            events.append(Thought(self._buffer[:idx]))
        if marker is None:
            self._buffer = self._buffer[idx:]
            return False
        self._buffer = self._buffer[idx + len(marker):]
        if marker in _OPENERS:
            self._open = _OPENERS[marker]
            self._payload = []
        else:
            LOGGER.debug("Ignoring stray closing tag %s", marker)
        return True

    def _step_inside(self, events: list[StructuralEvent]) -> bool:
        tag = self._open
        assert tag is not None
        closer = f"</{tag}>"
        candidates: tuple[str, ...] = (closer,)
        if tag == TAG_THOUGHT:
            candidates += _THOUGHT_BREAKERS
        idx, marker = _find_marker(self._buffer, candidates)
        if idx == -1:
            self._emit_body(self._buffer, events)
            self._buffer = ""
            return True
        if idx > 0:
            self._emit_body(self._buffer[:idx], events)
        if marker is None:
            self._buffer = self._buffer[idx:]
            return False
        if marker == closer:
            self._buffer = self._buffer[idx + len(marker):]
            self._close(tag, events)
        else:
            # Unclosed thought interrupted by another tag; reprocess the opener.
            self._buffer = self._buffer[idx:]
            self._open = None
        return True

    def _emit_body(self, text: str, events: list[StructuralEvent]) -> None:
        if not text:
            return
        tag = self._open
        if tag == TAG_THOUGHT:
            events.append(Thought(text))
            self._payload.append(text)
        elif tag == TAG_RESPONSE:
            events.append(ResponseDelta(text))
            self._response_parts.append(text)
        else:
            self._payload.append(text)

    def _close(self, tag: str, events: list[StructuralEvent]) -> None:
        payload = "".join(self._payload)
        self._payload = []
        self._open = None
        if tag == TAG_TOOL_CALL:
            call = parse_tool_call_payload(payload, index=next(self._calls))
            if call.is_malformed:
                LOGGER.debug("Malformed tool_call payload: %s", call.parse_error)
            events.append(call)
        elif tag == TAG_OBSERVATION:
            events.append(Observation(tool_name="", result=payload.strip(), from_model=True))
        elif tag == TAG_RESPONSE:
            self._responded = True
            events.append(FinalResponse("".join(self._response_parts).strip()))


def coalesce_deltas(events: Iterable[StructuralEvent]) -> list[StructuralEvent]:
    """Merge adjacent Thought and ResponseDelta events.

    Delta events are the only part of the output whose boundaries follow the
    input chunking; after coalescing, any chunking of the same text yields an
    identical list.
    """
    merged: list[StructuralEvent] = []
    for event in events:
        if merged and isinstance(event, (Thought, ResponseDelta)) and type(merged[-1]) is type(event):
            merged[-1] = type(event)(merged[-1].text + event.text)  # type: ignore[union-attr]
        else:
            merged.append(event)
    return merged


def untagged_text(text: str) -> str:
    """Return what the model wrote outside thought blocks, with tags removed."""
    return _ANY_TAG_RE.sub("", _THOUGHT_BLOCK_RE.sub("", text)).strip()
