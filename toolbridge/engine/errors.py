"""Exception hierarchy for the agent bridge.

Specific exceptions for each failure mode a turn can report to its
caller. Stream decode problems are not exceptions: malformed lines are
logged and skipped.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class AgentSpawnError(BridgeError):
    """The agent subprocess could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn agent '{command}': {reason}")


class TurnInProgressError(BridgeError):
    """A user message arrived while another turn is still running."""
    def __init__(self, chat_id: str | None = None):
        self.chat_id = chat_id
        super().__init__("A turn is already in progress")


class NoActiveChatError(BridgeError):
    """There is no active chat to receive the message."""
    def __init__(self) -> None:
        super().__init__("No active chat")


class ChatNotFoundError(BridgeError):
    """Requested chat does not exist."""
    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")


class InvalidMessageError(BridgeError):
    """A user message whose context cannot be turned into agent input."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid message: {reason}")
