"""Base classes for agent tools.

A tool is anything that can be described by a :class:`ToolCatalogueEntry`:
a unique name, a description, a JSON Schema for its arguments and an async
handler. Local tools subclass :class:`BaseTool`; remote providers build
entries directly from the server's tool listing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ...services.credentials import CredentialRecord

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ToolContext",
    "ToolHandler",
    "ToolCatalogueEntry",
    "ToolProvider",
    "BaseTool",
    "LocalToolProvider",
    "EMPTY_OBJECT_SCHEMA",
]

EMPTY_OBJECT_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


@dataclass(slots=True)
class ToolContext:
    """Runtime context handed to a tool invocation.

    Attributes:
        call_id: Identifier of the tool call being served.
        credentials: Resolved credentials when the tool declares it needs them.
        request_id: Identifier of the run, for tracing.
    """

    call_id: str | None = None
    credentials: CredentialRecord | None = None
    request_id: str | None = None


ToolHandler = Callable[[ToolContext, dict[str, Any]], Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class ToolCatalogueEntry:
    """Catalogue description of one callable tool.

    Attributes:
        name: Unique name the model uses in ``<tool_call>``.
        description: Human readable description shown in the prompt.
        parameters: JSON Schema for the arguments object.
        handler: Coroutine function executing the tool.
        requires_credentials: Credential kind needed (e.g. ``"gmail"``), or None.
        timeout: Per-tool execution budget in seconds; None uses the default.
        server: Remote server the tool came from, if any.
    """

    name: str
    description: str
    parameters: Mapping[str, Any]
    handler: ToolHandler = field(compare=False, repr=False)
    requires_credentials: str | None = None
    timeout: float | None = None
    server: str | None = None

    @property
    def base_name(self) -> str:
        """Name without the ``server:`` namespace."""
        return self.name.split(":", 1)[1] if ":" in self.name else self.name

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }


@runtime_checkable
class ToolProvider(Protocol):
    """Source of catalogue entries (local tool set, remote server)."""

    name: str

    async def list_tools(self) -> list[ToolCatalogueEntry]:
        ...


class BaseTool(ABC):
    """Abstract base class for local tools.

    Subclasses set the class attributes and implement :meth:`execute`.
    Raise :class:`~vibeagent.ai.tools.errors.ToolError` for expected
    failures; any other exception is reported as a tool execution error by
    the dispatcher.

    Example:
        class EchoTool(BaseTool):
            name = "echo"
            description = "Echo the arguments back"

            async def execute(self, context, params):
                return params
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    parameters: ClassVar[Mapping[str, Any]] = EMPTY_OBJECT_SCHEMA
    requires_credentials: ClassVar[str | None] = None
    timeout: ClassVar[float | None] = None

    @abstractmethod
    async def execute(self, context: ToolContext, params: dict[str, Any]) -> Any:
        """Execute the tool's core logic and return a JSON-friendly result."""
        ...

    def catalogue_entry(self) -> ToolCatalogueEntry:
        if not self.name:
            raise ValueError(f"{type(self).__name__} does not define a tool name")
        return ToolCatalogueEntry(
            name=self.name,
            description=self.description or (type(self).__doc__ or "").strip(),
            parameters=self.parameters,
            handler=self.execute,
            requires_credentials=self.requires_credentials,
            timeout=self.timeout,
        )


class LocalToolProvider:
    """Provider exposing in-process :class:`BaseTool` instances."""

    def __init__(self, tools: list[BaseTool] | tuple[BaseTool, ...] = (), *, name: str = "local") -> None:
        self.name = name
        self._tools: list[BaseTool] = list(tools)

    def add(self, tool: BaseTool) -> None:
        self._tools.append(tool)

    async def list_tools(self) -> list[ToolCatalogueEntry]:
        return [tool.catalogue_entry() for tool in self._tools]
