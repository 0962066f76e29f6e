"""Tests for the agent handle: lifecycle, memory and chat streaming."""

from __future__ import annotations

from typing import Any

import pytest

from tests.helpers import EchoTool, MailTool, RecordingTool, ScriptedModel
from vibeagent import Agent, CancelToken, Settings, TabContext, create_agent, get_status
from vibeagent.agent import INGEST_PAGE_TOOL, MEMORY_TOOL
from vibeagent.ai.orchestration.tool_dispatcher import ToolDispatcher
from vibeagent.ai.tools.base import LocalToolProvider
from vibeagent.ai.tools.registry import ToolRegistry
from vibeagent.services.credentials import HeaderCredentialResolver


def _agent(model: ScriptedModel, *tools: Any, credentials: Any = None, **kwargs: Any) -> Agent:
    return Agent(
        client=model,
        registry=ToolRegistry([LocalToolProvider(list(tools))]),
        dispatcher=ToolDispatcher(credentials=credentials),
        credentials=credentials,
        **kwargs,
    )


async def _chat(agent: Agent, message: str, **kwargs: Any) -> list[Any]:
    return [event async for event in agent.handle_chat_stream(message, **kwargs)]


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_status_before_and_after_initialize() -> None:
    agent = _agent(ScriptedModel([]))

    assert get_status(None) == {"ready": False, "initialized": False}
    assert get_status(agent) == {"ready": False, "initialized": False}

    await agent.initialize()

    assert get_status(agent) == {"ready": True, "initialized": True}


@pytest.mark.asyncio
async def test_first_chat_initializes_lazily() -> None:
    agent = _agent(ScriptedModel(["<response>hi</response>"]))

    events = await _chat(agent, "hello")

    assert agent.initialized
    assert events[-1].data["status"] == "success"


@pytest.mark.asyncio
async def test_empty_message_is_rejected() -> None:
    agent = _agent(ScriptedModel([]))
    with pytest.raises(ValueError):
        await _chat(agent, "   ")


@pytest.mark.asyncio
async def test_closed_agent_refuses_work() -> None:
    agent = _agent(ScriptedModel([]))
    await agent.aclose()

    assert not agent.ready
    with pytest.raises(RuntimeError):
        await _chat(agent, "hello")
    with pytest.raises(RuntimeError):
        await agent.initialize()


@pytest.mark.asyncio
async def test_update_tokens_without_resolver_is_a_no_op() -> None:
    agent = _agent(ScriptedModel([]))
    await agent.update_gmail_tokens({"access_token": "new"})


# -----------------------------------------------------------------------------
# Conversation memory
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_successful_runs_are_remembered_and_replayed() -> None:
    model = ScriptedModel(["<response>first answer</response>", "<response>second answer</response>"])
    agent = _agent(model)

    await _chat(agent, "first question")
    await _chat(agent, "second question")

    assert [message.content for message in agent.history] == [
        "first question",
        "first answer",
        "second question",
        "second answer",
    ]
    replayed = [message["content"] for message in model.calls[1][1:]]
    assert replayed == ["first question", "first answer", "second question"]


@pytest.mark.asyncio
async def test_history_limit_keeps_newest_messages() -> None:
    model = ScriptedModel(["<response>a1</response>", "<response>a2</response>"])
    agent = _agent(model, history_limit=2)

    await _chat(agent, "q1")
    await _chat(agent, "q2")

    assert [message.content for message in agent.history] == ["q2", "a2"]


@pytest.mark.asyncio
async def test_failed_runs_are_not_remembered() -> None:
    model = ScriptedModel(["<response>never</response>"], fail_on=0, fail_after=0)
    agent = _agent(model)

    events = await _chat(agent, "question")

    assert events[-1].data["status"] == "fatal_error"
    assert agent.history == ()


@pytest.mark.asyncio
async def test_cancelled_runs_are_not_remembered() -> None:
    token = CancelToken()
    token.cancel()
    agent = _agent(ScriptedModel([]))

    events = await _chat(agent, "question", cancel_token=token)

    assert [event.type for event in events] == ["done"]
    assert events[0].data["status"] == "cancelled"
    assert agent.history == ()


@pytest.mark.asyncio
async def test_reset_forgets_history() -> None:
    agent = _agent(ScriptedModel(["<response>ok</response>"]))
    await _chat(agent, "question")

    agent.reset()

    assert agent.history == ()


@pytest.mark.asyncio
async def test_memory_tool_receives_trimmed_exchange() -> None:
    memory = RecordingTool(MEMORY_TOOL)
    agent = _agent(ScriptedModel(["<response>short answer</response>"]), memory)
    question = "q" * 600

    await _chat(agent, question)

    assert memory.calls == [
        {"information": "User: " + "q" * 500 + "..."},
        {"information": "Assistant: short answer"},
    ]


@pytest.mark.asyncio
async def test_save_tab_memory_requires_ingest_tool() -> None:
    page = {"url": "https://example.com", "title": "Example", "content": "text"}

    without = _agent(ScriptedModel([]))
    assert await without.save_tab_memory(page) is False

    ingest = RecordingTool(INGEST_PAGE_TOOL)
    with_tool = _agent(ScriptedModel([]), ingest)
    assert await with_tool.save_tab_memory(page) is True
    assert ingest.calls == [{"extractedPage": page}]


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_headers_are_case_insensitive_credentials(gmail_headers) -> None:
    model = ScriptedModel(
        ['<tool_call>{"name": "send_mail", "arguments": {"to": "a@b.c"}}</tool_call>', "<response>sent</response>"]
    )
    agent = _agent(model, MailTool(), credentials=HeaderCredentialResolver())
    headers = {key.title(): value for key, value in gmail_headers.items()}

    events = await _chat(agent, "mail a@b.c", headers=headers)

    observation = next(event for event in events if event.type == "observation")
    assert observation.data["success"] is True
    assert observation.data["result"] == "sent to a@b.c with Bearer token"


@pytest.mark.asyncio
async def test_tabs_reach_the_prompt() -> None:
    model = ScriptedModel(["<response>summary</response>"])
    agent = _agent(model)
    tabs = [TabContext(alias="docs", url="https://docs.test", title="Docs", content="Install with pip."), TabContext(alias="gone")]

    await _chat(agent, "summarize @docs and @gone", tabs=tabs)

    prompt = model.calls[0]
    assert "=== TAB CONTENT: @docs ===" in prompt[1]["content"]
    assert prompt[-1]["content"].endswith("[ERRORS: Tab with alias @gone not found]")


@pytest.mark.asyncio
async def test_create_agent_wires_local_tools() -> None:
    echo = EchoTool()
    model = ScriptedModel(['<tool_call>{"name": "echo", "arguments": {"x": 5}}</tool_call>', "<response>5</response>"])
    agent = create_agent(Settings(max_iterations=3), client=model, tools=[echo])

    events = await _chat(agent, "echo five")

    assert echo.calls == [{"x": 5}]
    assert events[-1].data["final_text"] == "5"
    assert events[-1].data["iterations"] == 1


class _BrokenProvider:
    name = "broken"

    async def list_tools(self) -> list[Any]:
        raise AttributeError("'str' object has no attribute 'get'")


@pytest.mark.asyncio
async def test_catalogue_failure_still_ends_with_done() -> None:
    model = ScriptedModel([])
    agent = Agent(client=model, registry=ToolRegistry([_BrokenProvider()]), dispatcher=ToolDispatcher())

    events = await _chat(agent, "hello")

    assert [event.type for event in events] == ["error", "done"]
    assert events[-1].data["status"] == "fatal_error"
    assert "AttributeError" in events[-1].data["error"]
    assert model.calls == []
    assert not agent.initialized
