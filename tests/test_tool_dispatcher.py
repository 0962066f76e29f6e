"""Tests for tool dispatch: routing, validation, credentials and time budgets."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from tests.helpers import EchoTool, MailTool, SlowTool, build_catalogue
from vibeagent.ai.orchestration.tag_codec import parse_tool_call_payload
from vibeagent.ai.orchestration.tool_dispatcher import ToolDispatcher
from vibeagent.ai.orchestration.types import ToolCall
from vibeagent.ai.tools.base import BaseTool, ToolContext
from vibeagent.ai.tools.errors import ErrorCode, ToolError
from vibeagent.services.credentials import HeaderCredentialResolver


class _ExplodingTool(BaseTool):
    name = "explode"

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        raise RuntimeError("kaboom")


class _PoliteFailureTool(BaseTool):
    name = "polite"

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        raise ToolError(error_code="quota_exceeded", message="Daily quota used up", suggestion="Try tomorrow")


class _QuickTimeoutTool(SlowTool):
    timeout = 0.05


class _RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def on_tool_start(self, tool_name: str, arguments: Any) -> None:
        self.events.append(("start", tool_name))

    def on_tool_complete(self, result: Any) -> None:
        self.events.append(("complete", result.success))

    def on_tool_error(self, tool_name: str, error: ToolError) -> None:
        self.events.append(("error", error.error_code))


def _call(name: str, **arguments: Any) -> ToolCall:
    return ToolCall(name=name, raw_arguments="", call_id="call_001", arguments=arguments)


@pytest.mark.asyncio
async def test_successful_dispatch_returns_result_and_observation() -> None:
    echo = EchoTool()
    catalogue = await build_catalogue(echo)

    result = await ToolDispatcher().dispatch(_call("echo", x=1), catalogue)

    assert result.success
    assert result.result == {"echo": {"x": 1}}
    assert echo.calls == [{"x": 1}]
    observation = result.to_observation()
    assert observation.success
    assert observation.call_id == "call_001"
    assert '"x": 1' in observation.render()


@pytest.mark.asyncio
async def test_unknown_tool_yields_unknown_tool_error() -> None:
    catalogue = await build_catalogue(EchoTool())

    result = await ToolDispatcher().dispatch(_call("does_not_exist"), catalogue)

    assert not result.success
    assert result.error is not None
    assert result.error.error_code == ErrorCode.UNKNOWN_TOOL
    assert result.error.to_dict()["available_tools"] == ["echo"]


@pytest.mark.asyncio
async def test_schema_violation_yields_invalid_arguments() -> None:
    echo = EchoTool()
    catalogue = await build_catalogue(echo)

    missing = await ToolDispatcher().dispatch(_call("echo"), catalogue)
    wrong_type = await ToolDispatcher().dispatch(_call("echo", x="one"), catalogue)

    assert missing.error is not None and missing.error.error_code == ErrorCode.INVALID_ARGUMENTS
    assert "'x' is a required property" in missing.error.message
    assert wrong_type.error is not None and wrong_type.error.error_code == ErrorCode.INVALID_ARGUMENTS
    assert wrong_type.error.to_dict()["path"] == "x"
    assert echo.calls == []


@pytest.mark.asyncio
async def test_malformed_call_is_reported_without_touching_tools() -> None:
    echo = EchoTool()
    catalogue = await build_catalogue(echo)
    call = parse_tool_call_payload("{broken")

    result = await ToolDispatcher().dispatch(call, catalogue)

    assert result.error is not None
    assert result.error.error_code == ErrorCode.MALFORMED_TOOL_CALL
    assert result.error.to_dict()["raw_payload"] == "{broken"
    assert echo.calls == []


@pytest.mark.asyncio
async def test_timeout_yields_tool_timeout_and_cancels_tool() -> None:
    slow = _QuickTimeoutTool()
    catalogue = await build_catalogue(slow)
    dispatcher = ToolDispatcher(default_timeout=30.0)

    result = await dispatcher.dispatch(_call("slow"), catalogue)

    assert result.error is not None
    assert result.error.error_code == ErrorCode.TOOL_TIMEOUT
    assert slow.cancelled


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_execution_error() -> None:
    catalogue = await build_catalogue(_ExplodingTool())

    result = await ToolDispatcher().dispatch(_call("explode"), catalogue)

    assert result.error is not None
    assert result.error.error_code == ErrorCode.TOOL_EXECUTION_ERROR
    assert "RuntimeError: kaboom" in result.error.message


@pytest.mark.asyncio
async def test_tool_error_from_tool_passes_through() -> None:
    catalogue = await build_catalogue(_PoliteFailureTool())

    result = await ToolDispatcher().dispatch(_call("polite"), catalogue)

    assert result.error is not None
    assert result.error.error_code == "quota_exceeded"
    assert result.to_observation().render().count("Try tomorrow") == 1


@pytest.mark.asyncio
async def test_missing_credential_is_an_observation(gmail_headers: dict[str, str]) -> None:
    catalogue = await build_catalogue(MailTool())
    dispatcher = ToolDispatcher(credentials=HeaderCredentialResolver())
    headers = dict(gmail_headers)
    headers.pop("x-gmail-refresh-token")

    result = await dispatcher.dispatch(_call("send_mail", to="a@b.c"), catalogue, request_context=headers)

    assert result.error is not None
    assert result.error.error_code == ErrorCode.MISSING_CREDENTIAL
    assert result.error.message == "Missing or invalid Gmail refresh token"


class _BrokenResolver:
    source = "session"

    async def get_tokens(self, request_context=None):
        raise IsADirectoryError(21, "Is a directory", "store.json")

    async def update_tokens(self, partial) -> None:
        return None

    def clear_cache(self) -> None:
        return None


@pytest.mark.asyncio
async def test_unexpected_resolver_failure_is_a_missing_credential_observation() -> None:
    mail = MailTool()
    catalogue = await build_catalogue(mail)

    result = await ToolDispatcher(credentials=_BrokenResolver()).dispatch(_call("send_mail", to="a@b.c"), catalogue)

    assert not result.success
    assert result.error is not None
    assert result.error.error_code == ErrorCode.MISSING_CREDENTIAL
    assert "IsADirectoryError" in result.error.message


@pytest.mark.asyncio
async def test_credentials_reach_the_tool(gmail_headers: dict[str, str]) -> None:
    catalogue = await build_catalogue(MailTool())
    dispatcher = ToolDispatcher(credentials=HeaderCredentialResolver())

    result = await dispatcher.dispatch(_call("send_mail", to="a@b.c"), catalogue, request_context=gmail_headers)

    assert result.success
    assert result.result == "sent to a@b.c with Bearer token"


@pytest.mark.asyncio
async def test_credential_tool_without_resolver_reports_missing_credential() -> None:
    catalogue = await build_catalogue(MailTool())

    result = await ToolDispatcher().dispatch(_call("send_mail", to="a@b.c"), catalogue)

    assert result.error is not None
    assert result.error.error_code == ErrorCode.MISSING_CREDENTIAL


@pytest.mark.asyncio
async def test_cancellation_propagates_into_the_tool() -> None:
    slow = SlowTool()
    catalogue = await build_catalogue(slow)
    task = asyncio.create_task(ToolDispatcher().dispatch(_call("slow"), catalogue))
    await slow.started.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert slow.cancelled


@pytest.mark.asyncio
async def test_listener_sees_start_error_complete_and_failures_are_contained() -> None:
    listener = _RecordingListener()
    catalogue = await build_catalogue(EchoTool())
    dispatcher = ToolDispatcher(listener=listener)

    await dispatcher.dispatch(_call("nope"), catalogue)

    assert listener.events == [("start", "nope"), ("error", ErrorCode.UNKNOWN_TOOL), ("complete", False)]

    class _Broken(_RecordingListener):
        def on_tool_start(self, tool_name: str, arguments: Any) -> None:
            raise RuntimeError("listener bug")

    dispatcher.set_listener(_Broken())
    result = await dispatcher.dispatch(_call("echo", x=2), catalogue)
    assert result.success


def test_default_timeout_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ToolDispatcher(default_timeout=0)
