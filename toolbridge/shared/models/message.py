"""Chat message and message part models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex[:13]


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Browser clients send epoch milliseconds.
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return _utcnow()


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class MessagePart:
    """One typed part of a message.

    Only ``text`` parts are interpreted. Every other kind (image, file,
    ...) is an opaque payload; unknown keys survive a round trip in
    ``extra``.
    """
    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text_part(cls, text: str) -> MessagePart:
        return cls(type="text", text=text)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MessagePart:
        known = {"type", "text", "data", "mimeType"}
        return cls(
            type=str(raw.get("type", "")),
            text=raw.get("text"),
            data=raw.get("data"),
            mime_type=raw.get("mimeType"),
            extra={k: v for k, v in raw.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            d["text"] = self.text
        if self.data is not None:
            d["data"] = self.data
        if self.mime_type is not None:
            d["mimeType"] = self.mime_type
        d.update(self.extra)
        return d


@dataclass
class MessageMetadata:
    created_at: datetime = field(default_factory=_utcnow)
    # Page context captured by the toolbar: {"selectedElements": [...]}
    browser_data: dict[str, Any] | None = None
    # plugin name -> item name -> {"text": ...}
    plugin_content_items: dict[str, dict[str, Any]] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> MessageMetadata:
        raw = raw or {}
        known = {"createdAt", "browserData", "pluginContentItems"}
        return cls(
            created_at=_parse_timestamp(raw.get("createdAt")),
            browser_data=raw.get("browserData"),
            plugin_content_items=raw.get("pluginContentItems"),
            extra={k: v for k, v in raw.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"createdAt": self.created_at.isoformat()}
        if self.browser_data is not None:
            d["browserData"] = self.browser_data
        if self.plugin_content_items is not None:
            d["pluginContentItems"] = self.plugin_content_items
        d.update(self.extra)
        return d


@dataclass
class ChatMessage:
    role: MessageRole
    parts: list[MessagePart] = field(default_factory=list)
    id: str = field(default_factory=generate_id)
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatMessage:
        """Build a message from the JSON shape sent by the toolbar.

        Raises ValueError for an unknown role or a malformed field.
        """
        metadata = raw.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        if not isinstance(raw.get("parts") or [], list):
            raise ValueError("parts must be a list")
        return cls(
            role=MessageRole(raw.get("role", "user")),
            parts=[
                MessagePart.from_dict(p)
                for p in raw.get("parts") or []
                if isinstance(p, dict)
            ],
            id=str(raw.get("id") or generate_id()),
            metadata=MessageMetadata.from_dict(metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "parts": [p.to_dict() for p in self.parts],
            "metadata": self.metadata.to_dict(),
        }

    def first_text(self) -> str:
        for part in self.parts:
            if part.type == "text":
                return part.text or ""
        return ""

    def set_text(self, text: str) -> None:
        """Replace the single text part, creating it if missing."""
        for part in self.parts:
            if part.type == "text":
                part.text = text
                return
        self.parts.append(MessagePart.text_part(text))
