"""ReAct orchestration: tag decoding, dispatch, prompt assembly and the run loop."""

from .controller import ControllerConfig, IterationController, IterationStarted
from .events import AgentEvent, EventMultiplexer
from .message_builder import MessageBuilder, MessagePlan, TabContext
from .tag_codec import TagCodec, coalesce_deltas, parse_tool_call_payload
from .tool_dispatcher import DispatchResult, ToolDispatcher
from .types import (
    CancelToken,
    Conversation,
    FinalResponse,
    Message,
    Observation,
    ResponseDelta,
    RunOutcome,
    RunState,
    RunStatus,
    Thought,
    ToolCall,
    Truncated,
)

__all__ = [
    "AgentEvent",
    "CancelToken",
    "ControllerConfig",
    "Conversation",
    "DispatchResult",
    "EventMultiplexer",
    "FinalResponse",
    "IterationController",
    "IterationStarted",
    "Message",
    "MessageBuilder",
    "MessagePlan",
    "Observation",
    "ResponseDelta",
    "RunOutcome",
    "RunState",
    "RunStatus",
    "TabContext",
    "TagCodec",
    "Thought",
    "ToolCall",
    "ToolDispatcher",
    "Truncated",
    "coalesce_deltas",
    "parse_tool_call_payload",
]
