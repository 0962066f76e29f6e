"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Sequence

from vibeagent.ai.orchestration.controller import ControllerConfig, IterationController
from vibeagent.ai.orchestration.message_builder import MessageBuilder
from vibeagent.ai.orchestration.tool_dispatcher import ToolDispatcher
from vibeagent.ai.tools.base import BaseTool, LocalToolProvider, ToolContext
from vibeagent.ai.tools.errors import ModelTransportError
from vibeagent.ai.tools.registry import ToolCatalogue, ToolRegistry


class ScriptedModel:
    """Model client stub replaying one scripted generation per call.

    Each script entry is either a string (split into ``chunk_size`` pieces)
    or a list of fragments. ``fail_on`` makes the given call raise
    :class:`ModelTransportError` after emitting ``fail_after`` fragments.
    ``stall_after`` makes every call hang after that many fragments.

    Example:
        model = ScriptedModel(["<response>hi</response>"])
    """

    def __init__(
        self,
        script: Sequence[str | Sequence[str]],
        *,
        chunk_size: int = 7,
        fail_on: int | None = None,
        fail_after: int = 0,
        delay: float = 0.0,
        stall_after: int | None = None,
    ) -> None:
        self._script = list(script)
        self._chunk_size = chunk_size
        self._fail_on = fail_on
        self._fail_after = fail_after
        self._delay = delay
        self._stall_after = stall_after
        self.calls: list[list[dict[str, Any]]] = []
        self.closed_streams = 0

    async def generate(self, messages: Iterable[Any]) -> AsyncIterator[str]:
        index = len(self.calls)
        self.calls.append([dict(message) for message in messages])
        if index >= len(self._script):
            raise AssertionError(f"model called {index + 1} times but only {len(self._script)} scripted")
        entry = self._script[index]
        fragments = list(entry) if not isinstance(entry, str) else _chunks(entry, self._chunk_size)
        try:
            for position, fragment in enumerate(fragments):
                if self._fail_on == index and position == self._fail_after:
                    raise ModelTransportError("connection reset by peer")
                if self._stall_after == position:
                    await asyncio.sleep(3600)
                if self._delay:
                    await asyncio.sleep(self._delay)
                yield fragment
            if self._fail_on == index and self._fail_after >= len(fragments):
                raise ModelTransportError("connection reset by peer")
        finally:
            self.closed_streams += 1


def _chunks(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)] or [""]


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the arguments back"
    parameters = {
        "type": "object",
        "properties": {"x": {"type": "integer"}},
        "required": ["x"],
    }

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        self.calls.append(dict(params))
        return {"echo": params}


class SlowTool(BaseTool):
    """Sleeps until cancelled or timed out."""

    name = "slow"
    timeout = 5.0

    def __init__(self, seconds: float = 60.0) -> None:
        self.seconds = seconds
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        self.started.set()
        try:
            await asyncio.sleep(self.seconds)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "finished"


class MailTool(BaseTool):
    name = "send_mail"
    description = "Send an email"
    requires_credentials = "gmail"
    parameters = {
        "type": "object",
        "properties": {"to": {"type": "string"}},
        "required": ["to"],
    }

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        assert context.credentials is not None
        return f"sent to {params['to']} with {context.credentials.token_type} token"


class RecordingTool(BaseTool):
    """Generic tool recording its arguments under a configurable name."""

    parameters = {"type": "object"}

    def __init__(self, name: str) -> None:
        self._name = name
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:  # type: ignore[override]
        return self._name

    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        self.calls.append(dict(params))
        return "ok"


async def build_catalogue(*tools: BaseTool) -> ToolCatalogue:
    return await ToolRegistry([LocalToolProvider(list(tools))]).build_catalogue()


def make_controller(
    model: ScriptedModel,
    *,
    credentials: Any = None,
    max_iterations: int = 8,
    tool_timeout: float = 30.0,
) -> IterationController:
    return IterationController(
        client=model,
        dispatcher=ToolDispatcher(credentials=credentials, default_timeout=tool_timeout),
        builder=MessageBuilder(),
        config=ControllerConfig(max_iterations=max_iterations),
    )
