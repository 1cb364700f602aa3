"""Shared session state: chats, messages, and the working flag.

The state is owned by a SessionStore. Every change goes through
SessionStore.update(), which hands a recipe a private copy of the
current state, installs the result in one step, and then notifies
subscribers with the new state.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from toolbridge.shared.models.message import ChatMessage, generate_id

logger = logging.getLogger(__name__)

DEFAULT_CHAT_TITLE = "New Chat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Chat:
    title: str = DEFAULT_CHAT_TITLE
    created_at: datetime = field(default_factory=_utcnow)
    messages: list[ChatMessage] = field(default_factory=list)

    def find_message(self, message_id: str) -> ChatMessage | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "createdAt": self.created_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class SessionState:
    """Everything a remote client can observe."""

    active_chat_id: str | None = None
    chats: dict[str, Chat] = field(default_factory=dict)
    is_working: bool = False
    # Passthrough fields owned by other agent backends.
    tool_call_approval_requests: list[Any] = field(default_factory=list)
    subscription: Any = None

    def add_chat(self, chat_id: str | None = None, title: str = DEFAULT_CHAT_TITLE) -> str:
        chat_id = chat_id or generate_id()
        self.chats[chat_id] = Chat(title=title)
        self.active_chat_id = chat_id
        return chat_id

    def set_active(self, chat_id: str) -> None:
        if chat_id not in self.chats:
            raise KeyError(chat_id)
        self.active_chat_id = chat_id

    def remove_chat(self, chat_id: str) -> None:
        """Delete a chat, keeping exactly one chat active.

        Removing the active chat activates the first remaining chat, or
        a fresh chat when none remain.
        """
        if chat_id not in self.chats:
            raise KeyError(chat_id)
        del self.chats[chat_id]
        if self.active_chat_id == chat_id:
            next_id = next(iter(self.chats), None)
            if next_id is None:
                self.add_chat()
            else:
                self.active_chat_id = next_id

    def get_active_chat(self) -> Chat | None:
        if self.active_chat_id:
            return self.chats.get(self.active_chat_id)
        return None

    def check_invariants(self) -> None:
        if self.active_chat_id is not None and self.active_chat_id not in self.chats:
            raise ValueError(f"Active chat {self.active_chat_id} does not exist")
        if self.chats and self.active_chat_id is None:
            raise ValueError("Chats exist but no chat is active")

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeChatId": self.active_chat_id,
            "chats": {cid: chat.to_dict() for cid, chat in self.chats.items()},
            "isWorking": self.is_working,
            "toolCallApprovalRequests": copy.deepcopy(self.tool_call_approval_requests),
            "subscription": copy.deepcopy(self.subscription),
        }


StateListener = Callable[[SessionState], None]
Recipe = Callable[[SessionState], Any]
ChatRecipe = Callable[[Chat], None]


class SessionStore:
    """Single-writer holder of the current SessionState.

    Not thread-safe: all updates must come from the event loop thread.
    A recipe must not await, so each update is atomic with respect to
    other tasks on the loop.
    """

    def __init__(self, initial: SessionState | None = None) -> None:
        self._state = initial or SessionState()
        self._state.check_invariants()
        self._listeners: list[StateListener] = []
        self._version = 0
        self._updating = False

    @property
    def state(self) -> SessionState:
        """Current installed state. Treat as read-only."""
        return self._state

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> SessionState:
        return copy.deepcopy(self._state)

    def update(self, recipe: Recipe) -> SessionState:
        """Apply *recipe* to a draft copy and install the result.

        The recipe may mutate the draft in place or return a new
        SessionState; any other return value is ignored.
        If it raises, nothing is installed and listeners are not called.
        """
        with self._transaction():
            draft = copy.deepcopy(self._state)
            result = recipe(draft)
            self._install(result if isinstance(result, SessionState) else draft)
        self._notify()
        return self._state

    def update_chat(self, chat_id: str, recipe: ChatRecipe) -> SessionState:
        """Apply *recipe* to a draft of one chat and install the result.

        Only the chat itself is copied: the draft gets its own message
        list, but the messages in it are shared with the installed state.
        A recipe that changes a message must put a copy in its place.
        A chat that no longer exists is left alone.
        """
        with self._transaction():
            chat = self._state.chats.get(chat_id)
            if chat is None:
                logger.debug("update_chat: chat %s does not exist", chat_id)
                return self._state
            draft_chat = copy.copy(chat)
            draft_chat.messages = list(chat.messages)
            recipe(draft_chat)
            draft = copy.copy(self._state)
            draft.chats = {**self._state.chats, chat_id: draft_chat}
            self._install(draft)
        self._notify()
        return self._state

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        if self._updating:
            raise RuntimeError("SessionStore updates are not re-entrant")
        self._updating = True
        try:
            yield
        finally:
            self._updating = False

    def _install(self, new_state: SessionState) -> None:
        new_state.check_invariants()
        self._state = new_state
        self._version += 1

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Session state listener failed")
