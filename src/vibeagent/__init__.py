"""Streaming ReAct agent runtime."""

from .agent import Agent, create_agent, get_status
from .ai.orchestration.events import AgentEvent, CancelToken
from .ai.orchestration.message_builder import TabContext
from .services.settings import Settings, SettingsStore

__all__ = [
    "Agent",
    "AgentEvent",
    "CancelToken",
    "Settings",
    "SettingsStore",
    "TabContext",
    "create_agent",
    "get_status",
]

__version__ = "0.1.0"
