"""Agent handle: wires the run loop to a model, tools and credentials.

An :class:`Agent` owns short conversation memory and serializes runs; there
is no module-level current agent, so callers pass the handle wherever status
is needed (see :func:`get_status`).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Mapping, Sequence

from .ai.client import ModelClient
from .ai.orchestration.controller import ControllerConfig, IterationController
from .ai.orchestration.events import AgentEvent, EventMultiplexer
from .ai.orchestration.message_builder import MessageBuilder, TabContext
from .ai.orchestration.tool_dispatcher import ToolDispatcher
from .ai.orchestration.types import CancelToken, Conversation, Message, RunOutcome, RunStatus, ToolCall
from .ai.providers import create_model_client
from .ai.tools.base import BaseTool, LocalToolProvider, ToolProvider
from .ai.tools.registry import ToolRegistry
from .ai.tools.remote import RemoteServerConfig, RemoteToolProvider
from .services.credentials import AnyCredentialResolver, SecureCredentialStore, create_credential_resolver
from .services.settings import Settings

__all__ = ["Agent", "create_agent", "get_status", "MEMORY_TOOL", "INGEST_PAGE_TOOL"]

LOGGER = logging.getLogger(__name__)

MEMORY_TOOL = "save_conversation_memory"
INGEST_PAGE_TOOL = "ingest_extracted_page"
_MEMORY_TRIM_CHARS = 500


class Agent:
    """Runs chat requests through the ReAct loop, one at a time."""

    def __init__(
        self,
        *,
        client: ModelClient,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
        credentials: AnyCredentialResolver | None = None,
        builder: MessageBuilder | None = None,
        max_iterations: int = 8,
        history_limit: int = 20,
    ) -> None:
        if history_limit < 0:
            raise ValueError("history_limit must not be negative")
        self._client = client
        self._registry = registry
        self._dispatcher = dispatcher
        self._credentials = credentials
        self._builder = builder or MessageBuilder(client if hasattr(client, "count_tokens") else None)
        self._controller = IterationController(
            client=client,
            dispatcher=dispatcher,
            builder=self._builder,
            config=ControllerConfig(max_iterations=max_iterations),
        )
        self._multiplexer = EventMultiplexer(self._controller)
        self._history_limit = history_limit
        self._history: list[Message] = []
        self._lock = asyncio.Lock()
        self._initialized = False
        self._closed = False
        self._internal_calls = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def ready(self) -> bool:
        return self._initialized and not self._closed and self._client is not None

    @property
    def history(self) -> tuple[Message, ...]:
        return tuple(self._history)

    async def initialize(self) -> None:
        """Discover tools once; later runs reuse the cached catalogue."""
        if self._closed:
            raise RuntimeError("Agent has been closed")
        catalogue = await self._registry.build_catalogue()
        self._initialized = True
        LOGGER.info("Agent initialized with %d tool(s)", len(catalogue))

    def get_status(self) -> dict[str, bool]:
        return {"ready": self.ready, "initialized": self._initialized}

    def reset(self) -> None:
        """Forget conversation memory and cached tools."""
        self._history.clear()
        self.clear_tool_cache()
        LOGGER.debug("Agent memory reset")

    def clear_tool_cache(self) -> None:
        self._registry.clear_cache()
        self._builder.clear_tool_cache()
        self._dispatcher.reset_validators()

    async def update_gmail_tokens(self, partial: Mapping[str, Any]) -> None:
        if self._credentials is None:
            LOGGER.warning("No credential resolver configured; ignoring Gmail token update")
            return
        await self._credentials.update_tokens(partial)
        self.clear_tool_cache()
        LOGGER.info("Gmail tokens updated")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for provider in self._registry.providers:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
        close_client = getattr(self._client, "aclose", None)
        if close_client is not None:
            await close_client()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def handle_chat_stream(
        self,
        message: str,
        *,
        tabs: Sequence[TabContext] = (),
        headers: Mapping[str, str] | None = None,
        cancel_token: CancelToken | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run one chat request and stream its events.

        Runs on the same agent are serialized. The stream always ends with a
        single ``done`` event.
        """
        if not message or not message.strip():
            raise ValueError("message must not be empty")
        if self._closed:
            raise RuntimeError("Agent has been closed")
        request_id = request_id or uuid.uuid4().hex[:8]
        context = {str(key).lower(): value for key, value in headers.items()} if headers else None

        async with self._lock:
            start = time.perf_counter()
            try:
                if not self._initialized:
                    await self.initialize()
                catalogue = await self._registry.build_catalogue()
            except Exception as exc:
                LOGGER.exception("Request %s could not prepare its tool catalogue", request_id)
                outcome = RunOutcome(status=RunStatus.FATAL_ERROR, error=f"{type(exc).__name__}: {exc}")
                yield AgentEvent("error", {"message": outcome.error, "status": outcome.status.value})
                yield AgentEvent.done(outcome)
                return
            state = self._controller.new_state(
                Conversation([Message.user(message)]),
                catalogue,
                credentials_context=context,
            )
            LOGGER.debug("Processing request %s", request_id)
            stream = self._multiplexer.stream(
                state,
                history=self.history,
                tabs=tabs,
                cancel_token=cancel_token,
                request_id=request_id,
            )
            async with aclosing(stream) as events:
                async for event in events:
                    if event.is_terminal:
                        LOGGER.debug(
                            "Request %s completed with %s in %.2fms",
                            request_id,
                            event.data.get("status"),
                            (time.perf_counter() - start) * 1000.0,
                        )
                        if event.data.get("status") == RunStatus.SUCCESS.value:
                            await self._remember(message, str(event.data.get("final_text", "")), catalogue)
                    yield event

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def save_tab_memory(self, page: Mapping[str, Any]) -> bool:
        """Hand an extracted page to the knowledge-base ingestion tool, if any."""
        catalogue = await self._registry.build_catalogue()
        if catalogue.resolve(INGEST_PAGE_TOOL) is None:
            LOGGER.warning("%s tool not available in any connected server", INGEST_PAGE_TOOL)
            return False
        return await self._call_internal(INGEST_PAGE_TOOL, {"extractedPage": dict(page)}, catalogue)

    async def _remember(self, user_text: str, response: str, catalogue: Any) -> None:
        self._history.extend((Message.user(user_text), Message.assistant(response)))
        if self._history_limit and len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]
        elif not self._history_limit:
            self._history.clear()

        if catalogue.resolve(MEMORY_TOOL) is None:
            return
        for line in (f"User: {_trim(user_text)}", f"Assistant: {_trim(response)}"):
            if not await self._call_internal(MEMORY_TOOL, {"information": line}, catalogue):
                break

    async def _call_internal(self, name: str, arguments: Mapping[str, Any], catalogue: Any) -> bool:
        call = ToolCall(
            name=name,
            raw_arguments="",
            call_id=f"internal_{next(self._internal_calls):03d}",
            arguments=dict(arguments),
        )
        result = await self._dispatcher.dispatch(call, catalogue)
        if not result.success:
            LOGGER.error("Internal call to %s failed: %s", name, result.error)
        return result.success


def _trim(text: str, limit: int = _MEMORY_TRIM_CHARS) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


# -----------------------------------------------------------------------------
# Module helpers
# -----------------------------------------------------------------------------


def get_status(agent: Agent | None) -> dict[str, bool]:
    """Status for ``agent``; ``None`` means no agent has been created yet."""
    if agent is None:
        return {"ready": False, "initialized": False}
    return agent.get_status()


def create_agent(
    settings: Settings,
    *,
    client: ModelClient | None = None,
    tools: Sequence[BaseTool] = (),
    providers: Sequence[ToolProvider] = (),
    credential_store: SecureCredentialStore | None = None,
) -> Agent:
    """Build an :class:`Agent` from deployment settings."""
    model_client = client or create_model_client(settings)
    all_providers: list[ToolProvider] = []
    if tools:
        all_providers.append(LocalToolProvider(list(tools)))
    all_providers.extend(providers)
    for server in settings.remote_tool_servers:
        config = RemoteServerConfig(
            name=str(server.get("name", "")),
            url=str(server.get("url", "")),
            requires_credentials=server.get("requires_credentials"),
            timeout=server.get("timeout"),
        )
        all_providers.append(
            RemoteToolProvider(
                config,
                request_timeout=settings.request_timeout,
                max_attempts=settings.max_retries,
            )
        )

    credentials = create_credential_resolver(settings, store=credential_store)
    dispatcher = ToolDispatcher(credentials=credentials, default_timeout=settings.tool_timeout)
    builder = MessageBuilder(
        model_client if hasattr(model_client, "count_tokens") else None,
        context_token_budget=settings.context_token_budget,
    )
    return Agent(
        client=model_client,
        registry=ToolRegistry(all_providers),
        dispatcher=dispatcher,
        credentials=credentials,
        builder=builder,
        max_iterations=settings.max_iterations,
        history_limit=settings.history_limit,
    )
