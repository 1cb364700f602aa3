"""Event types read from the agent's stream-json output.

Each output line is one JSON object whose ``type`` selects a variant.
Records with an unrecognized type become UnknownEvent so consumers can
ignore them explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base event decoded from one output line."""
    type: str = ""
    session_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class SystemEvent(StreamEvent):
    type: str = "system"
    subtype: str = ""
    model: str | None = None
    cwd: str | None = None

    @property
    def is_init(self) -> bool:
        return self.subtype == "init"


@dataclass
class AssistantEvent(StreamEvent):
    type: str = "assistant"
    message: dict[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str | None:
        return self.message.get("id")

    def text(self) -> str:
        """Concatenate every text fragment of the message content."""
        content = self.message.get("content")
        if not isinstance(content, list):
            return ""
        return "".join(
            str(item.get("text") or "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )


@dataclass
class ToolUseEvent(StreamEvent):
    type: str = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None


@dataclass
class ToolResultEvent(StreamEvent):
    type: str = "tool_result"
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False


@dataclass
class ResultEvent(StreamEvent):
    type: str = "result"
    subtype: str = ""
    result: str = ""
    is_error: bool = False
    duration_ms: int | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None

    @property
    def success(self) -> bool:
        return not self.is_error


@dataclass
class UnknownEvent(StreamEvent):
    pass


_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "system": SystemEvent,
    "assistant": AssistantEvent,
    "tool_use": ToolUseEvent,
    "tool_result": ToolResultEvent,
    "result": ResultEvent,
}


def parse_event(data: dict[str, Any]) -> StreamEvent:
    """Convert a decoded JSON record to a typed event dataclass."""
    event_type = data.get("type")
    cls = _EVENT_MAP.get(event_type) if isinstance(event_type, str) else None
    if cls is None:
        return UnknownEvent(
            type=str(event_type or ""),
            session_id=data.get("session_id"),
            raw=data,
        )
    # Filter record keys to only those the dataclass accepts
    valid_fields = set(cls.__dataclass_fields__) - {"raw"}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if cls is AssistantEvent and not isinstance(filtered.get("message"), dict):
        filtered.pop("message", None)
    if cls is ResultEvent and filtered.get("result") is None:
        filtered.pop("result", None)
    if "is_error" in filtered:
        filtered["is_error"] = bool(filtered["is_error"])
    return cls(raw=data, **filtered)
