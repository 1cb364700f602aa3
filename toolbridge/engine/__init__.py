"""Agent engine: subprocess supervision, stream decoding, prompt building, turns."""
from .config import AgentConfig
from .errors import (
    AgentSpawnError,
    BridgeError,
    ChatNotFoundError,
    InvalidMessageError,
    NoActiveChatError,
    TurnInProgressError,
)
from .events import (
    AssistantEvent,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    ToolResultEvent,
    ToolUseEvent,
    UnknownEvent,
)
from .lifecycle import TurnPhase
from .agent import ToolbarAgent, Turn, TurnOutcome

__all__ = [
    "AgentConfig",
    # Errors
    "AgentSpawnError",
    "BridgeError",
    "ChatNotFoundError",
    "InvalidMessageError",
    "NoActiveChatError",
    "TurnInProgressError",
    # Events
    "AssistantEvent",
    "ResultEvent",
    "StreamEvent",
    "SystemEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "UnknownEvent",
    # Turns
    "ToolbarAgent",
    "Turn",
    "TurnOutcome",
    "TurnPhase",
]
