"""Iteration controller: the ReAct state machine.

Each iteration assembles the prompt, streams one generation through a fresh
:class:`TagCodec` and branches on the first decisive event:

* ``ToolCall``: dispatch it, append the assistant text and the observation,
  then loop. Malformed calls take the same path; the dispatcher turns them
  into a ``malformed_tool_call`` observation.
* ``FinalResponse``: the run ends with ``success``.
* ``Truncated`` without a response: the run ends with ``truncated``.
* A clean end with neither: the untagged text is the answer.

The controller yields its transitions as an async iterator. The last item is
always a :class:`RunOutcome`; :mod:`.events` turns the stream into caller
events.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Mapping, Sequence, TypeVar, Union

from ..client import ModelClient
from ..tools.errors import ModelTransportError
from .message_builder import MessageBuilder, TabContext
from .tag_codec import TAG_RESPONSE, TAG_TOOL_CALL, TagCodec, untagged_text
from .tool_dispatcher import ToolDispatcher
from .types import (
    CancelToken,
    FinalResponse,
    Message,
    Observation,
    ResponseDelta,
    RunOutcome,
    RunPhase,
    RunState,
    RunStatus,
    Thought,
    ToolCall,
    Truncated,
)

__all__ = [
    "ControllerConfig",
    "IterationController",
    "IterationStarted",
    "RunCancelled",
    "RunEvent",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Configuration for the iteration controller.

    Attributes:
        max_iterations: Ceiling on tool-call round-trips per run.
    """

    max_iterations: int = 8

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")


@dataclass(slots=True, frozen=True)
class IterationStarted:
    """A new generation is about to be requested."""

    iteration: int
    prompt_tokens: int = 0


class RunCancelled(Exception):
    """Raised internally when the cancel token fires during a suspension."""


RunEvent = Union[IterationStarted, Thought, ResponseDelta, ToolCall, Observation, RunOutcome]


@dataclass(slots=True)
class _Generation:
    """What one streamed generation produced."""

    text: str = ""
    call: ToolCall | None = None
    final: FinalResponse | None = None
    truncated: Truncated | None = None
    thoughts: list[str] = field(default_factory=list)
    response: list[str] = field(default_factory=list)

    def streamed_text(self) -> str:
        """Text already relayed to the caller, preferring the response."""
        return "".join(self.response) or "".join(self.thoughts)


class IterationController:
    """Drives one run of the ReAct loop.

    Example:
        controller = IterationController(client=client, dispatcher=dispatcher, builder=builder)
        async for event in controller.run(state):
            ...
    """

    def __init__(
        self,
        *,
        client: ModelClient,
        dispatcher: ToolDispatcher,
        builder: MessageBuilder,
        config: ControllerConfig | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._builder = builder
        self._config = config or ControllerConfig()

    @property
    def config(self) -> ControllerConfig:
        return self._config

    def new_state(
        self,
        conversation: Any,
        catalogue: Any,
        *,
        credentials_context: Mapping[str, str] | None = None,
    ) -> RunState:
        return RunState(
            conversation=conversation,
            catalogue=catalogue,
            max_iterations=self._config.max_iterations,
            credentials_context=credentials_context,
        )

    async def run(
        self,
        state: RunState,
        *,
        history: Sequence[Message] = (),
        tabs: Sequence[TabContext] = (),
        cancel_token: CancelToken | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[RunEvent]:
        """Run the loop until a terminal status, yielding every transition."""
        tool_calls = 0
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                yield self._finish(state, RunStatus.CANCELLED, tool_calls=tool_calls)
                return

            state.phase = RunPhase.ASSEMBLING
            plan = self._builder.build_messages(state.conversation, state.catalogue, history=history, tabs=tabs)
            state.phase = RunPhase.GENERATING
            iteration = state.iteration_count + 1
            LOGGER.debug("Iteration %d: requesting generation (~%d prompt tokens)", iteration, plan.prompt_tokens)
            yield IterationStarted(iteration=iteration, prompt_tokens=plan.prompt_tokens)

            generation = _Generation()
            try:
                async with aclosing(self._generate(plan.messages, generation, cancel_token)) as events:
                    async for event in events:
                        yield event
            except RunCancelled:
                yield self._finish(state, RunStatus.CANCELLED, tool_calls=tool_calls)
                return
            except ModelTransportError as exc:
                LOGGER.error("Model generation failed on iteration %d", iteration, exc_info=True)
                yield self._finish(state, RunStatus.FATAL_ERROR, tool_calls=tool_calls, error=str(exc))
                return

            if generation.call is not None:
                call = generation.call
                if state.ceiling_reached:
                    LOGGER.warning(
                        "Iteration ceiling of %d reached; not dispatching %s",
                        state.max_iterations,
                        call.name or "<malformed call>",
                    )
                    yield self._finish(state, RunStatus.ITERATION_CEILING, tool_calls=tool_calls)
                    return

                state.phase = RunPhase.DISPATCHING
                yield call
                try:
                    observation = await self._dispatch(call, state, cancel_token, request_id)
                except RunCancelled:
                    yield self._finish(state, RunStatus.CANCELLED, tool_calls=tool_calls)
                    return
                tool_calls += 1
                state.conversation.append(Message.assistant(_cut_after(generation.text, f"</{TAG_TOOL_CALL}>")))
                state.conversation.append(
                    Message.observation(
                        observation.render(),
                        tool_name=observation.tool_name,
                        tool_call_id=observation.call_id,
                    )
                )
                state.record_round_trip()
                yield observation
                continue

            state.phase = RunPhase.RESPONDING
            if generation.final is not None:
                text = generation.final.text
                state.conversation.append(Message.assistant(_cut_after(generation.text, f"</{TAG_RESPONSE}>")))
                yield self._finish(state, RunStatus.SUCCESS, final_text=text, tool_calls=tool_calls)
                return

            if generation.truncated is not None:
                truncated = generation.truncated
                partial = generation.streamed_text()
                LOGGER.info("Generation truncated inside <%s>", truncated.open_tag)
                if truncated.open_tag != TAG_RESPONSE:
                    LOGGER.debug("Unfinished <%s> payload: %r", truncated.open_tag, truncated.partial_text)
                yield self._finish(state, RunStatus.TRUNCATED, final_text=partial, tool_calls=tool_calls)
                return

            text = untagged_text(generation.text)
            LOGGER.debug("Generation ended without a response tag; using untagged text")
            state.conversation.append(Message.assistant(generation.text))
            yield self._finish(state, RunStatus.SUCCESS, final_text=text, tool_calls=tool_calls)
            return

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate(
        self,
        messages: Sequence[Any],
        generation: _Generation,
        cancel_token: CancelToken | None,
    ) -> AsyncIterator[RunEvent]:
        """Stream one generation, yielding deltas until a decisive event."""
        codec = TagCodec()
        parts: list[str] = []
        stream = self._client.generate(messages)
        try:
            while True:
                # A stalled stream must not outlive the cancel token.
                fragment = await _cancellable(_next_fragment(stream), cancel_token)
                if fragment is None:
                    break
                if cancel_token is not None and cancel_token.cancelled:
                    raise RunCancelled()
                parts.append(fragment)
                for event in codec.feed(fragment):
                    if self._absorb(event, generation):
                        yield event  # type: ignore[misc]
                if generation.call is not None or generation.final is not None:
                    return
            for event in codec.finish():
                if self._absorb(event, generation):
                    yield event  # type: ignore[misc]
        finally:
            generation.text = "".join(parts)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _absorb(event: Any, generation: _Generation) -> bool:
        """Record ``event``; return True when it should be relayed to the caller."""
        if generation.call is not None or generation.final is not None:
            return False
        if isinstance(event, Thought):
            generation.thoughts.append(event.text)
            return True
        if isinstance(event, ResponseDelta):
            generation.response.append(event.text)
            return True
        if isinstance(event, ToolCall):
            generation.call = event
        elif isinstance(event, FinalResponse):
            generation.final = event
        elif isinstance(event, Truncated):
            generation.truncated = event
        elif isinstance(event, Observation):
            LOGGER.debug("Ignoring observation written by the model")
        return False

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        call: ToolCall,
        state: RunState,
        cancel_token: CancelToken | None,
        request_id: str | None,
    ) -> Observation:
        result = await _cancellable(
            self._dispatcher.dispatch(
                call,
                state.catalogue,
                request_context=state.credentials_context,
                request_id=request_id,
            ),
            cancel_token,
        )
        return result.to_observation()

    def _finish(
        self,
        state: RunState,
        status: RunStatus,
        *,
        final_text: str = "",
        tool_calls: int = 0,
        error: str | None = None,
    ) -> RunOutcome:
        state.terminate(status)
        LOGGER.debug("Run finished with %s after %d iteration(s)", status.value, state.iteration_count)
        return RunOutcome(
            status=status,
            final_text=final_text,
            iteration_count=state.iteration_count,
            tool_calls=tool_calls,
            error=error,
        )


async def _cancellable(awaitable: Awaitable[T], cancel_token: CancelToken | None) -> T:
    """Await ``awaitable`` as a task, cancelling it when the token fires."""
    if cancel_token is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    if task in done:
        return task.result()
    raise RunCancelled()


async def _next_fragment(stream: AsyncIterator[str]) -> str | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


def _cut_after(text: str, marker: str) -> str:
    idx = text.find(marker)
    if idx == -1:
        return text
    return text[: idx + len(marker)]
