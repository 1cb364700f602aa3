"""Tests for SessionState chat rules and the transactional SessionStore."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from toolbridge.shared.models.message import ChatMessage, MessagePart, MessageRole
from toolbridge.shared.models.session import (
    DEFAULT_CHAT_TITLE,
    SessionState,
    SessionStore,
)


def test_add_chat_activates_it() -> None:
    state = SessionState()
    chat_id = state.add_chat()
    assert state.active_chat_id == chat_id
    assert state.chats[chat_id].title == DEFAULT_CHAT_TITLE
    assert state.chats[chat_id].messages == []


def test_delete_active_chat_promotes_other() -> None:
    state = SessionState()
    first = state.add_chat()
    second = state.add_chat()
    assert state.active_chat_id == second
    state.remove_chat(second)
    assert state.active_chat_id == first
    assert list(state.chats) == [first]


def test_delete_only_chat_creates_fresh_one() -> None:
    state = SessionState()
    only = state.add_chat()
    state.remove_chat(only)
    assert len(state.chats) == 1
    assert only not in state.chats
    assert state.active_chat_id in state.chats


def test_delete_inactive_chat_keeps_active() -> None:
    state = SessionState()
    first = state.add_chat()
    second = state.add_chat()
    state.remove_chat(first)
    assert state.active_chat_id == second


def test_unknown_chat_raises_key_error() -> None:
    state = SessionState()
    state.add_chat()
    with pytest.raises(KeyError):
        state.set_active("nope")
    with pytest.raises(KeyError):
        state.remove_chat("nope")


def test_check_invariants() -> None:
    SessionState().check_invariants()
    with pytest.raises(ValueError):
        SessionState(active_chat_id="ghost").check_invariants()
    broken = SessionState()
    broken.add_chat()
    broken.active_chat_id = None
    with pytest.raises(ValueError):
        broken.check_invariants()


def test_to_dict_uses_client_keys() -> None:
    state = SessionState()
    chat_id = state.add_chat()
    payload = state.to_dict()
    assert set(payload) == {
        "activeChatId", "chats", "isWorking", "toolCallApprovalRequests", "subscription",
    }
    assert payload["activeChatId"] == chat_id
    assert payload["isWorking"] is False
    assert payload["chats"][chat_id]["title"] == DEFAULT_CHAT_TITLE


def test_update_installs_draft_and_notifies() -> None:
    store = SessionStore()
    seen: list[SessionState] = []
    store.subscribe(seen.append)

    before = store.state
    store.update(lambda draft: draft.add_chat("c1"))

    assert store.version == 1
    assert store.state is not before
    assert before.chats == {}
    assert list(store.state.chats) == ["c1"]
    assert seen == [store.state]


def test_update_accepts_returned_state() -> None:
    store = SessionStore()
    replacement = SessionState(is_working=True)
    store.update(lambda draft: replacement)
    assert store.state is replacement


def test_failed_recipe_installs_nothing() -> None:
    store = SessionStore()
    store.update(lambda draft: draft.add_chat("c1"))
    calls: list[SessionState] = []
    store.subscribe(calls.append)

    def _bad(draft: SessionState) -> None:
        draft.is_working = True
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update(_bad)
    assert store.state.is_working is False
    assert store.version == 1
    assert calls == []


def test_invariant_violation_rejected() -> None:
    store = SessionStore()
    store.update(lambda draft: draft.add_chat("c1"))

    def _orphan(draft: SessionState) -> None:
        draft.active_chat_id = "missing"

    with pytest.raises(ValueError):
        store.update(_orphan)
    assert store.state.active_chat_id == "c1"


def test_update_is_not_reentrant() -> None:
    store = SessionStore()
    errors: list[Exception] = []

    def _outer(draft: SessionState) -> None:
        try:
            store.update(lambda inner: None)
        except RuntimeError as exc:
            errors.append(exc)

    store.update(_outer)
    assert len(errors) == 1


def test_listener_failure_is_logged_not_raised() -> None:
    store = SessionStore()
    good: list[SessionState] = []

    def _broken(state: SessionState) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(_broken)
    store.subscribe(good.append)
    store.update(lambda draft: draft.add_chat())
    assert len(good) == 1


def test_unsubscribe() -> None:
    store = SessionStore()
    seen: list[SessionState] = []
    unsubscribe = store.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    store.update(lambda draft: draft.add_chat())
    assert seen == []


def test_snapshot_is_independent() -> None:
    store = SessionStore()
    store.update(lambda draft: draft.add_chat("c1"))
    snap = store.snapshot()
    snap.chats["c1"].title = "changed"
    assert store.state.chats["c1"].title == DEFAULT_CHAT_TITLE


def test_update_chat_copies_only_that_chat() -> None:
    store = SessionStore()

    def _two_chats(draft: SessionState) -> None:
        draft.add_chat("c1")
        draft.add_chat("c2")

    store.update(_two_chats)
    store.update(lambda draft: draft.chats["c1"].messages.append(
        ChatMessage(role=MessageRole.USER, parts=[MessagePart.text_part("q")])
    ))
    seen: list[SessionState] = []
    store.subscribe(seen.append)
    before = store.state
    version = store.version

    reply = ChatMessage(role=MessageRole.ASSISTANT)
    store.update_chat("c1", lambda chat: chat.messages.append(reply))

    after = store.state
    assert seen == [after]
    assert store.version == version + 1
    assert after.chats["c2"] is before.chats["c2"]
    assert after.chats["c1"].messages[0] is before.chats["c1"].messages[0]
    assert after.chats["c1"].messages[1] is reply
    assert len(before.chats["c1"].messages) == 1
    assert after.active_chat_id == "c2"


def test_update_chat_missing_chat_is_noop() -> None:
    store = SessionStore()
    seen: list[SessionState] = []
    store.subscribe(seen.append)
    store.update_chat("gone", lambda chat: chat.messages.clear())
    assert seen == []
    assert store.version == 0


def test_update_chat_failed_recipe_installs_nothing() -> None:
    store = SessionStore()
    store.update(lambda draft: draft.add_chat("c1"))
    before = store.state

    def _boom(chat) -> None:
        chat.title = "half done"
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update_chat("c1", _boom)
    assert store.state is before
    assert store.state.chats["c1"].title == DEFAULT_CHAT_TITLE
    store.update_chat("c1", lambda chat: None)


# ── Message model ──


def test_message_from_dict_preserves_opaque_parts_and_metadata() -> None:
    raw = {
        "id": "m1",
        "role": "user",
        "parts": [
            {"type": "text", "text": "hello"},
            {"type": "file", "mimeType": "image/png", "data": "AAA", "filename": "a.png"},
            "not-a-part",
        ],
        "metadata": {
            "createdAt": "2024-05-01T12:00:00Z",
            "browserData": {"selectedElements": []},
            "customKey": {"x": 1},
        },
    }
    message = ChatMessage.from_dict(raw)
    assert message.id == "m1"
    assert message.role is MessageRole.USER
    assert len(message.parts) == 2
    assert message.parts[1].extra == {"filename": "a.png"}
    assert message.metadata.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    out = message.to_dict()
    assert out["parts"][1] == {
        "type": "file", "data": "AAA", "mimeType": "image/png", "filename": "a.png",
    }
    assert out["metadata"]["customKey"] == {"x": 1}
    assert out["metadata"]["browserData"] == {"selectedElements": []}


def test_message_bad_role() -> None:
    with pytest.raises(ValueError):
        ChatMessage.from_dict({"role": "system", "parts": []})


def test_message_malformed_fields_raise_value_error() -> None:
    with pytest.raises(ValueError, match="metadata"):
        ChatMessage.from_dict({"role": "user", "parts": [], "metadata": "oops"})
    with pytest.raises(ValueError, match="parts"):
        ChatMessage.from_dict({"role": "user", "parts": 5})
    assert ChatMessage.from_dict({"role": "user", "metadata": None}).metadata.browser_data is None


def test_set_text_replaces_single_text_part() -> None:
    message = ChatMessage(role=MessageRole.ASSISTANT)
    message.set_text("Hel")
    message.set_text("Hello")
    assert [p.type for p in message.parts] == ["text"]
    assert message.first_text() == "Hello"


def test_set_text_keeps_other_parts() -> None:
    message = ChatMessage(
        role=MessageRole.ASSISTANT,
        parts=[MessagePart(type="file", data="X"), MessagePart.text_part("a")],
    )
    message.set_text("b")
    assert [(p.type, p.text) for p in message.parts] == [("file", None), ("text", "b")]
