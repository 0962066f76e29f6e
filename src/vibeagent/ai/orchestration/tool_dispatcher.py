"""Tool dispatch for the ReAct loop.

Routes a decoded :class:`ToolCall` to its catalogue entry, validates the
arguments, resolves credentials and runs the handler under a time budget.
Every failure comes back as a :class:`DispatchResult` carrying a
:class:`ToolError`; only cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from ..tools.base import ToolCatalogueEntry, ToolContext
from ..tools.errors import (
    MalformedToolCallError,
    MissingCredentialError,
    ToolError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
)
from ..tools.registry import ToolCatalogue
from ..tools.validation import ArgumentValidator
from .types import Observation, ToolCall

LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchResult:
    """Result of a tool dispatch operation.

    Attributes:
        success: Whether the tool executed successfully.
        result: The tool's return value.
        error: Error if dispatch or execution failed.
        tool_name: Name of the tool as requested by the model.
        call_id: Identifier of the originating tool call.
        execution_time_ms: Wall time spent in dispatch, in milliseconds.
    """

    success: bool
    result: Any
    error: ToolError | None = None
    tool_name: str = ""
    call_id: str | None = None
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_observation(self) -> Observation:
        return Observation(
            tool_name=self.tool_name,
            call_id=self.call_id,
            result=self.result if self.success else None,
            error=self.error,
            duration_ms=self.execution_time_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error.to_dict() if self.error else {"message": "Unknown error"}
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, tool_name: str, arguments: Mapping[str, Any]) -> None:
        ...

    def on_tool_complete(self, result: DispatchResult) -> None:
        ...

    def on_tool_error(self, tool_name: str, error: ToolError) -> None:
        ...


class CredentialSource(Protocol):
    async def get_tokens(self, request_context: Mapping[str, str] | None = None) -> Any:
        ...


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Dispatches tool calls against a catalogue snapshot.

    Tool side effects are never retried here; a tool that wants retries
    implements them itself.

    Example:
        dispatcher = ToolDispatcher(credentials=resolver, default_timeout=30.0)
        result = await dispatcher.dispatch(call, catalogue, request_context=headers)
    """

    def __init__(
        self,
        *,
        credentials: CredentialSource | None = None,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT,
        listener: DispatchListener | None = None,
        validator: ArgumentValidator | None = None,
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self._credentials = credentials
        self._default_timeout = float(default_timeout)
        self._listener = listener
        self._validator = validator or ArgumentValidator()

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    def reset_validators(self) -> None:
        """Forget compiled schemas, e.g. after the catalogue was rebuilt."""
        self._validator.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        call: ToolCall,
        catalogue: ToolCatalogue,
        *,
        request_context: Mapping[str, str] | None = None,
        request_id: str | None = None,
    ) -> DispatchResult:
        """Dispatch one tool call and return its outcome.

        Raises:
            asyncio.CancelledError: When the surrounding run is cancelled.
        """
        start = time.perf_counter()
        arguments: Mapping[str, Any] = call.arguments or {}
        self._notify_start(call.name, arguments)

        if call.is_malformed:
            error: ToolError = MalformedToolCallError(
                message=f"Could not parse tool_call: {call.parse_error}",
                raw_payload=call.raw_arguments,
            )
            return self._error_result(call, error, start)

        entry = catalogue.resolve(call.name)
        if entry is None:
            error = UnknownToolError(
                message=f"Tool '{call.name}' is not registered.",
                tool_name=call.name,
                available=catalogue.names,
            )
            return self._error_result(call, error, start)

        try:
            self._validator.validate(entry.name, entry.parameters, arguments)
        except ToolError as exc:
            return self._error_result(call, exc, start)

        try:
            context = await self._build_context(entry, call, request_context, request_id)
        except ToolError as exc:
            return self._error_result(call, exc, start)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Credential resolution for %s failed unexpectedly", entry.name)
            error = MissingCredentialError(
                message=f"Could not resolve credentials for '{entry.name}': {type(exc).__name__}: {exc}",
            )
            return self._error_result(call, error, start)

        timeout =entry.timeout if entry.timeout is not None else self._default_timeout
        try:
            value = await asyncio.wait_for(entry.handler(context, dict(arguments)), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", entry.name, timeout)
            error = ToolTimeoutError(
                message=f"Tool '{entry.name}' did not finish within {timeout:g} seconds",
                timeout_seconds=timeout,
            )
            return self._error_result(call, error, start)
        except ToolError as exc:
            return self._error_result(call, exc, start)
        except asyncio.CancelledError:
            LOGGER.debug("Tool %s cancelled", entry.name)
            raise
        except Exception as exc:
            LOGGER.exception("Tool %s failed unexpectedly", entry.name)
            error = ToolExecutionError(
                message=f"Tool '{entry.name}' raised {type(exc).__name__}: {exc}",
                tool_name=entry.name,
            )
            return self._error_result(call, error, start)

        result = DispatchResult(
            success=True,
            result=value,
            tool_name=call.name,
            call_id=call.call_id,
            execution_time_ms=_elapsed_ms(start),
        )
        LOGGER.debug("Tool %s completed in %.1fms", entry.name, result.execution_time_ms)
        self._notify_complete(result)
        return result

    async def _build_context(
        self,
        entry: ToolCatalogueEntry,
        call: ToolCall,
        request_context: Mapping[str, str] | None,
        request_id: str | None,
    ) -> ToolContext:
        context = ToolContext(call_id=call.call_id, request_id=request_id)
        if entry.requires_credentials is None:
            return context
        if self._credentials is None:
            raise MissingCredentialError(
                message=f"Tool '{entry.name}' needs {entry.requires_credentials} credentials but none are configured",
            )
        context.credentials = await self._credentials.get_tokens(request_context)
        return context

    # ------------------------------------------------------------------
    # Result Building
    # ------------------------------------------------------------------

    def _error_result(self, call: ToolCall, error: ToolError, start: float) -> DispatchResult:
        LOGGER.debug("Tool call %s (%s) failed: %s", call.call_id, call.name or "<unnamed>", error)
        result = DispatchResult(
            success=False,
            result=None,
            error=error,
            tool_name=call.name,
            call_id=call.call_id,
            execution_time_ms=_elapsed_ms(start),
        )
        self._notify_error(call.name, error)
        self._notify_complete(result)
        return result

    def _notify_start(self, tool_name: str, arguments: Mapping[str, Any]) -> None:
        if self._listener:
            try:
                self._listener.on_tool_start(tool_name, arguments)
            except Exception:
                LOGGER.debug("Listener on_tool_start failed", exc_info=True)

    def _notify_error(self, tool_name: str, error: ToolError) -> None:
        if self._listener:
            try:
                self._listener.on_tool_error(tool_name, error)
            except Exception:
                LOGGER.debug("Listener on_tool_error failed", exc_info=True)

    def _notify_complete(self, result: DispatchResult) -> None:
        if self._listener:
            try:
                self._listener.on_tool_complete(result)
            except Exception:
                LOGGER.debug("Listener on_tool_complete failed", exc_info=True)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


__all__ = [
    "DEFAULT_TOOL_TIMEOUT",
    "DispatchResult",
    "DispatchListener",
    "ToolDispatcher",
]
