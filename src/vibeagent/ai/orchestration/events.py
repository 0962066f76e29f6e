"""Caller-facing event stream for a run.

Turns controller transitions into :class:`AgentEvent` objects. Within a run
events keep the order of the underlying transitions and exactly one ``done``
event closes the stream. A cancelled run ends with a single
``done{"status": "cancelled"}`` and nothing after it.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping, Sequence

from .controller import IterationController, IterationStarted, RunEvent
from .message_builder import TabContext
from .types import (
    CancelToken,
    Message,
    Observation,
    ResponseDelta,
    RunOutcome,
    RunState,
    RunStatus,
    Thought,
    ToolCall,
)

__all__ = [
    "AgentEvent",
    "CancelToken",
    "EventMultiplexer",
    "EventType",
    "EVENT_TYPES",
]

LOGGER = logging.getLogger(__name__)

EventType = Literal["text-delta", "tool-call", "observation", "progress", "error", "done"]
EVENT_TYPES: tuple[str, ...] = ("text-delta", "tool-call", "observation", "progress", "error", "done")


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """One event delivered to the caller."""

    type: EventType
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type == "done"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": dict(self.data)}

    @classmethod
    def done(cls, outcome: RunOutcome) -> "AgentEvent":
        return cls("done", outcome.to_dict())


class EventMultiplexer:
    """Relays one controller run as an ordered :class:`AgentEvent` stream."""

    def __init__(self, controller: IterationController) -> None:
        self._controller = controller

    async def stream(
        self,
        state: RunState,
        *,
        history: Sequence[Message] = (),
        tabs: Sequence[TabContext] = (),
        cancel_token: CancelToken | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[AgentEvent]:
        token = cancel_token or CancelToken()
        transitions = self._controller.run(
            state,
            history=history,
            tabs=tabs,
            cancel_token=token,
            request_id=request_id,
        )
        outcome: RunOutcome | None = None
        try:
            async with aclosing(transitions):
                async for item in transitions:
                    if isinstance(item, RunOutcome):
                        outcome = item
                        break
                    if token.cancelled:
                        break
                    event = self._translate(item)
                    if event is not None:
                        yield event
        except Exception as exc:
            LOGGER.exception("Run %s aborted by an unexpected error", request_id or "<anonymous>")
            outcome = _abort(state, RunStatus.FATAL_ERROR, error=f"{type(exc).__name__}: {exc}")

        if outcome is None or (token.cancelled and outcome.status is not RunStatus.CANCELLED):
            outcome = _abort(state, RunStatus.CANCELLED)
        if outcome.status is RunStatus.FATAL_ERROR:
            message = outcome.error or "Model generation failed"
            yield AgentEvent("error", {"message": message, "status": outcome.status.value})
        yield AgentEvent.done(outcome)

    @staticmethod
    def _translate(item: RunEvent) -> AgentEvent | None:
        if isinstance(item, Thought):
            return AgentEvent("text-delta", {"text": item.text, "kind": "thought"})
        if isinstance(item, ResponseDelta):
            return AgentEvent("text-delta", {"text": item.text, "kind": "response"})
        if isinstance(item, ToolCall):
            return AgentEvent("tool-call", item.to_dict())
        if isinstance(item, Observation):
            return AgentEvent("observation", item.to_dict())
        if isinstance(item, IterationStarted):
            return AgentEvent("progress", {"iteration": item.iteration, "stage": "generating"})
        return None


def _abort(state: RunState, status: RunStatus, *, error: str | None = None) -> RunOutcome:
    if not state.status.is_terminal:
        state.terminate(status)
    return RunOutcome(status=status, iteration_count=state.iteration_count, error=error)
