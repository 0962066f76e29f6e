"""Tests for the caller-facing event stream."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable

import pytest

from tests.helpers import EchoTool, ScriptedModel, SlowTool, build_catalogue, make_controller
from vibeagent.ai.orchestration.events import EVENT_TYPES, AgentEvent, EventMultiplexer
from vibeagent.ai.orchestration.types import CancelToken, Conversation, Message, RunOutcome, RunStatus


class _BrokenModel:
    async def generate(self, messages: Iterable[Any]) -> AsyncIterator[str]:
        yield "<thought>about to fail"
        raise RuntimeError("tokenizer exploded")


async def _stream(model: Any, *tools: Any, token: CancelToken | None = None, **kwargs: Any) -> list[AgentEvent]:
    controller = make_controller(model, **kwargs)
    state = controller.new_state(Conversation([Message.user("question")]), await build_catalogue(*tools))
    return [event async for event in EventMultiplexer(controller).stream(state, cancel_token=token)]


def _types(events: list[AgentEvent]) -> list[str]:
    return [event.type for event in events]


@pytest.mark.asyncio
async def test_round_trip_event_sequence() -> None:
    model = ScriptedModel(
        [
            '<tool_call>{"name": "echo", "arguments": {"x": 3}, "id": "c1"}</tool_call>',
            "<response>three</response>",
        ],
        chunk_size=100,
    )

    events = await _stream(model, EchoTool())

    assert _types(events) == ["progress", "tool-call", "observation", "progress", "text-delta", "done"]
    assert events[0].data == {"iteration": 1, "stage": "generating"}
    assert events[1].data == {"id": "c1", "name": "echo", "arguments": {"x": 3}}
    assert events[2].data["success"] is True
    assert events[2].data["result"] == {"echo": {"x": 3}}
    assert events[4].data == {"text": "three", "kind": "response"}
    assert events[-1].data == {"status": "success", "final_text": "three", "iterations": 1, "tool_calls": 1}
    assert all(event.type in EVENT_TYPES for event in events)


@pytest.mark.asyncio
async def test_thoughts_are_marked() -> None:
    events = await _stream(ScriptedModel(["<thought>hmm</thought><response>ok</response>"], chunk_size=100))

    thoughts = [event.data["text"] for event in events if event.data.get("kind") == "thought"]
    assert thoughts == ["hmm"]


@pytest.mark.asyncio
async def test_transport_failure_emits_error_then_done() -> None:
    model = ScriptedModel(["<response>x</response>"], fail_on=0, fail_after=0)

    events = await _stream(model)

    assert _types(events)[-2:] == ["error", "done"]
    assert events[-2].data == {"message": "connection reset by peer", "status": "fatal_error"}
    assert events[-1].data["status"] == "fatal_error"
    assert events[-1].data["error"] == "connection reset by peer"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_fatal_error() -> None:
    events = await _stream(_BrokenModel())

    assert _types(events)[-2:] == ["error", "done"]
    assert "tokenizer exploded" in events[-2].data["message"]
    assert events[-1].is_terminal
    assert events[-1].data["status"] == "fatal_error"


@pytest.mark.asyncio
async def test_cancel_yields_exactly_one_done() -> None:
    slow = SlowTool()
    model = ScriptedModel(['<tool_call>{"name": "slow", "arguments": {}}</tool_call>'])
    token = CancelToken()

    task = asyncio.create_task(_stream(model, slow, token=token))
    await asyncio.wait_for(slow.started.wait(), timeout=1.0)
    token.cancel()
    events = await asyncio.wait_for(task, timeout=1.0)

    assert _types(events).count("done") == 1
    assert events[-1].data["status"] == "cancelled"
    assert "observation" not in _types(events)
    assert slow.cancelled


@pytest.mark.asyncio
async def test_cancel_while_model_stalls_ends_with_cancelled_done() -> None:
    model = ScriptedModel([["<response>partial", " rest</response>"]], stall_after=1)
    token = CancelToken()

    task = asyncio.create_task(_stream(model, token=token))
    await asyncio.sleep(0.05)
    token.cancel()
    events = await asyncio.wait_for(task, timeout=2.0)

    assert _types(events) == ["progress", "text-delta", "done"]
    assert events[-1].data["status"] == "cancelled"


@pytest.mark.asyncio
async def test_ceiling_is_reported_in_done() -> None:
    call = '<tool_call>{"name": "echo", "arguments": {"x": 1}}</tool_call>'
    events = await _stream(ScriptedModel([call, call]), EchoTool(), max_iterations=1)

    assert events[-1].data["status"] == "iteration_ceiling"
    assert events[-1].data["iterations"] == 1
    assert _types(events).count("observation") == 1


def test_agent_event_serialization() -> None:
    event = AgentEvent.done(RunOutcome(status=RunStatus.CANCELLED))
    assert event.to_dict() == {
        "type": "done",
        "data": {"status": "cancelled", "final_text": "", "iterations": 0, "tool_calls": 0},
    }
    assert not AgentEvent("progress", {"iteration": 1}).is_terminal
