"""Tests for composing the agent's stream-json input message."""
from __future__ import annotations

import json

from toolbridge.engine.prompt import (
    DOM_CONTEXT_LABEL,
    PLUGIN_CONTEXT_LABEL,
    SCREENSHOT_MEDIA_TYPE,
    PromptInput,
    build_message,
    build_prompt_text,
    compose_input,
    extract_plugin_snippets,
    extract_screenshots,
    serialize_dom_context,
)
from toolbridge.shared.models.message import ChatMessage, MessagePart


def _image(data: str) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": SCREENSHOT_MEDIA_TYPE, "data": data},
    }


def test_plain_text_only() -> None:
    msg = build_message(PromptInput(text="fix bug"))
    assert msg == {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": "fix bug"}]},
    }


def test_screenshots_come_first_in_order() -> None:
    msg = build_message(PromptInput(text="hi", screenshots=["AAA", "BBB"]))
    assert msg["message"]["content"] == [
        _image("AAA"),
        _image("BBB"),
        {"type": "text", "text": "hi"},
    ]


def test_section_order_and_separators() -> None:
    prompt = PromptInput(
        text="make it blue",
        dom_context="Element 1:\nXPath: /html/body/button",
        plugin_snippets=["[react/tree]\n<App/>", "[git/branch]\nmain"],
    )
    assert build_prompt_text(prompt) == (
        f"{DOM_CONTEXT_LABEL}\nElement 1:\nXPath: /html/body/button"
        "\n\n"
        f"{PLUGIN_CONTEXT_LABEL}\n[react/tree]\n<App/>\n[git/branch]\nmain"
        "\n\n"
        "make it blue"
    )


def test_build_message_is_deterministic() -> None:
    prompt = PromptInput(
        text="t", dom_context="d", screenshots=["S1", "S2"], plugin_snippets=["p"],
    )
    first = json.dumps(build_message(prompt))
    second = json.dumps(build_message(prompt))
    assert first == second


def test_empty_text_still_emits_one_text_item() -> None:
    content = build_message(PromptInput(text=""))["message"]["content"]
    assert content == [{"type": "text", "text": ""}]


def test_serialize_dom_context_absent() -> None:
    assert serialize_dom_context([]) is None
    assert serialize_dom_context(None) is None


def test_serialize_dom_context_blocks() -> None:
    text = serialize_dom_context([
        {
            "xpath": "/html/body/div[1]",
            "textContent": "Sign in",
            "attributes": {"class": "btn primary", "data-id": "7"},
        },
        {"xpath": "/html/body/img"},
    ])
    assert text == (
        "Element 1:\n"
        "XPath: /html/body/div[1]\n"
        "Text: Sign in\n"
        'Attributes: {"class":"btn primary","data-id":"7"}'
        "\n\n"
        "Element 2:\n"
        "XPath: /html/body/img"
    )


def test_serialize_dom_context_skips_non_objects() -> None:
    text = serialize_dom_context(["div", None, {"xpath": "/html/body/a"}, 7])
    assert text == "Element 1:\nXPath: /html/body/a"
    assert serialize_dom_context(["div", 3]) is None
    assert serialize_dom_context({"xpath": "/html"}) is None


def test_extract_screenshots_filters_image_files() -> None:
    parts = [
        {"type": "text", "text": "hello"},
        {"type": "file", "mimeType": "image/png", "data": "AAA"},
        {"type": "file", "mimeType": "application/pdf", "data": "PDF"},
        {"type": "file", "mimeType": "image/jpeg"},
        MessagePart(type="file", mime_type="image/webp", data="BBB"),
    ]
    assert extract_screenshots(parts) == ["AAA", "BBB"]


def test_extract_plugin_snippets_follows_mapping_order() -> None:
    items = {
        "react": {"tree": {"text": "<App/>"}, "props": {"text": "{}"}},
        "git": {"branch": {"text": "main"}},
    }
    assert extract_plugin_snippets(items) == [
        "[react/tree]\n<App/>",
        "[react/props]\n{}",
        "[git/branch]\nmain",
    ]
    assert extract_plugin_snippets(None) == []
    assert extract_plugin_snippets({}) == []


def test_extract_plugin_snippets_skips_non_mapping_items() -> None:
    items = {"p": ["oops"], "q": None, "r": {"a": {"text": "kept"}}}
    assert extract_plugin_snippets(items) == ["[r/a]\nkept"]
    assert extract_plugin_snippets(["not", "a", "mapping"]) == []


def test_compose_input_from_toolbar_message() -> None:
    message = ChatMessage.from_dict({
        "id": "u1",
        "role": "user",
        "parts": [
            {"type": "text", "text": "center this"},
            {"type": "file", "mimeType": "image/png", "data": "SHOT"},
        ],
        "metadata": {
            "createdAt": 1_700_000_000_000,
            "browserData": {"selectedElements": [{"xpath": "/html/body/h1"}]},
            "pluginContentItems": {"vue": {"route": {"text": "/home"}}},
        },
    })
    prompt = compose_input(message)
    assert prompt.text == "center this"
    assert prompt.screenshots == ["SHOT"]
    assert prompt.dom_context == "Element 1:\nXPath: /html/body/h1"
    assert prompt.plugin_snippets == ["[vue/route]\n/home"]

    content = build_message(prompt)["message"]["content"]
    assert content[0] == _image("SHOT")
    assert content[1]["text"].endswith("\n\ncenter this")


def test_compose_input_without_context() -> None:
    message = ChatMessage.from_dict({"role": "user", "parts": [{"type": "text", "text": "hi"}]})
    prompt = compose_input(message)
    assert prompt == PromptInput(text="hi")
