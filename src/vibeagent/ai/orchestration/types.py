"""Core type definitions for the ReAct run loop.

Messages and structural events are frozen so they can be shared between the
codec, the controller and the event stream without defensive copies. The
conversation itself is append-only.
"""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal, Mapping, Sequence, Union

from openai.types.chat import ChatCompletionMessageParam

from ..tools.errors import ToolError

__all__ = [
    # Conversation
    "Message",
    "MessageRole",
    "Conversation",
    # Structural events
    "Thought",
    "ResponseDelta",
    "ToolCall",
    "Observation",
    "FinalResponse",
    "Truncated",
    "StructuralEvent",
    # Run state
    "RunPhase",
    "RunStatus",
    "RunState",
    "RunOutcome",
    "CancelToken",
    # Helpers
    "format_tool_result",
]


# -----------------------------------------------------------------------------
# Helper
# -----------------------------------------------------------------------------


def format_tool_result(result: Any) -> str:
    """Render a tool result as observation text.

    Strings pass through verbatim; everything else is serialized as indented
    JSON, falling back to ``str`` for values json cannot encode.
    """
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "observation"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable conversation turn.

    Observation turns carry tool output; they are sent to the model as user
    messages wrapped in ``<observation>`` tags because the tag protocol, not
    native function calling, links calls to results.
    """

    role: MessageRole
    content: str
    tool_name: str | None = None
    tool_call_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        if self.role == "observation":
            content = f"<observation>\n{self.content}\n</observation>"
            return {"role": "user", "content": content}  # type: ignore[return-value]
        return {"role": self.role, "content": self.content}  # type: ignore[return-value]

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> Message:
        return cls(role="assistant", content=content, metadata=metadata)

    @classmethod
    def observation(
        cls,
        content: str,
        *,
        tool_name: str | None = None,
        tool_call_id: str | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="observation",
            content=content,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            metadata=metadata,
        )


class Conversation:
    """Append-only ordered sequence of turns."""

    __slots__ = ("_messages",)

    def __init__(self, messages: Sequence[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        if not isinstance(message, Message):
            raise TypeError("Conversation only accepts Message instances")
        self._messages.append(message)

    def extend(self, messages: Sequence[Message]) -> None:
        for message in messages:
            self.append(message)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def tail(self, limit: int) -> tuple[Message, ...]:
        """Return the most recent ``limit`` turns."""
        if limit <= 0:
            return ()
        return tuple(self._messages[-limit:])

    def copy(self) -> Conversation:
        return Conversation(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"Conversation(turns={len(self._messages)})"


# -----------------------------------------------------------------------------
# Structural Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Thought:
    """Streaming reasoning text (inside ``<thought>`` or untagged)."""

    text: str


@dataclass(slots=True, frozen=True)
class ResponseDelta:
    """Streaming fragment of the final response body."""

    text: str


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A decoded ``<tool_call>`` payload.

    ``parse_error`` is set when the payload could not be decoded into a name
    and an arguments object; ``name`` and ``arguments`` are then best-effort.
    """

    name: str
    raw_arguments: str
    call_id: str
    arguments: Mapping[str, Any] | None = None
    parse_error: str | None = None

    @property
    def is_malformed(self) -> bool:
        return self.parse_error is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.call_id,
            "name": self.name,
            "arguments": dict(self.arguments) if self.arguments is not None else None,
        }
        if self.parse_error is not None:
            payload["parse_error"] = self.parse_error
            payload["raw_arguments"] = self.raw_arguments
        return payload


@dataclass(slots=True, frozen=True)
class Observation:
    """Result or error of a tool call.

    ``from_model`` marks ``<observation>`` text the model wrote itself; those
    are never authoritative.
    """

    tool_name: str
    call_id: str | None = None
    result: Any = None
    error: ToolError | None = None
    duration_ms: float = 0.0
    from_model: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def render(self) -> str:
        """Text fed back to the model for this observation."""
        if self.error is not None:
            return format_tool_result(self.error.to_dict())
        return format_tool_result(self.result)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        else:
            payload["result"] = self.result
        return payload


@dataclass(slots=True, frozen=True)
class FinalResponse:
    """The complete ``<response>`` body. Terminates a run."""

    text: str


@dataclass(slots=True, frozen=True)
class Truncated:
    """End of stream reached while a tag was still open."""

    open_tag: str
    partial_text: str = ""


StructuralEvent = Union[Thought, ResponseDelta, ToolCall, Observation, FinalResponse, Truncated]


# -----------------------------------------------------------------------------
# Run State
# -----------------------------------------------------------------------------


class RunPhase(str, enum.Enum):
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    DISPATCHING = "dispatching"
    RESPONDING = "responding"
    TERMINATED = "terminated"


class RunStatus(str, enum.Enum):
    """Terminal (or running) status of a run."""

    RUNNING = "running"
    SUCCESS = "success"
    TRUNCATED = "truncated"
    ITERATION_CEILING = "iteration_ceiling"
    FATAL_ERROR = "fatal_error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass(slots=True)
class RunState:
    """Mutable state of one controller run.

    ``iteration_count`` counts completed tool round-trips and never exceeds
    ``max_iterations``.
    """

    conversation: Conversation
    catalogue: Any
    max_iterations: int
    credentials_context: Mapping[str, str] | None = None
    iteration_count: int = 0
    phase: RunPhase = RunPhase.ASSEMBLING
    status: RunStatus = RunStatus.RUNNING

    def record_round_trip(self) -> None:
        if self.iteration_count >= self.max_iterations:
            raise RuntimeError("iteration ceiling already reached")
        self.iteration_count += 1

    @property
    def ceiling_reached(self) -> bool:
        return self.iteration_count >= self.max_iterations

    def terminate(self, status: RunStatus) -> None:
        if not status.is_terminal:
            raise ValueError("terminate() requires a terminal status")
        self.phase = RunPhase.TERMINATED
        self.status = status


@dataclass(slots=True, frozen=True)
class RunOutcome:
    """Summary of a finished run."""

    status: RunStatus
    final_text: str = ""
    iteration_count: int = 0
    tool_calls: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "final_text": self.final_text,
            "iterations": self.iteration_count,
            "tool_calls": self.tool_calls,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class CancelToken:
    """Cooperative cancellation flag shared by a caller and one run."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
