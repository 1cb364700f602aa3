"""Build the agent's stream-json input message from a toolbar message.

The text the agent sees is assembled in a fixed order so it can be
predicted exactly:

    [Selected DOM elements]
    <one block per element>

    [Project context]
    <plugin snippets>

    <user text>

Screenshots go first as separate base64 image attachments.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from toolbridge.shared.models.message import ChatMessage

SCREENSHOT_MEDIA_TYPE = "image/png"
DOM_CONTEXT_LABEL = "[Selected DOM elements]"
PLUGIN_CONTEXT_LABEL = "[Project context]"


@dataclass
class PromptInput:
    text: str = ""
    dom_context: str | None = None
    screenshots: list[str] = field(default_factory=list)
    plugin_snippets: list[str] = field(default_factory=list)


def build_prompt_text(prompt: PromptInput) -> str:
    sections: list[str] = []

    if prompt.dom_context:
        sections.append(f"{DOM_CONTEXT_LABEL}\n{prompt.dom_context}")

    if prompt.plugin_snippets:
        sections.append(f"{PLUGIN_CONTEXT_LABEL}\n" + "\n".join(prompt.plugin_snippets))

    sections.append(prompt.text)

    return "\n\n".join(sections)


def build_message(prompt: PromptInput) -> dict[str, Any]:
    """Return the wire message written to the agent's stdin."""
    content: list[dict[str, Any]] = []

    for screenshot in prompt.screenshots:
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": SCREENSHOT_MEDIA_TYPE,
                "data": screenshot,
            },
        })

    content.append({"type": "text", "text": build_prompt_text(prompt)})

    return {"type": "user", "message": {"role": "user", "content": content}}


def serialize_dom_context(elements: list[dict[str, Any]] | None) -> str | None:
    """Render selected elements as readable blocks, or None if there are none.

    Entries that are not objects are skipped.
    """
    if not elements or not isinstance(elements, list):
        return None

    blocks = []
    for el in elements:
        if not isinstance(el, dict):
            continue
        lines = [f"Element {len(blocks) + 1}:"]
        if el.get("xpath"):
            lines.append(f"XPath: {el['xpath']}")
        if el.get("textContent"):
            lines.append(f"Text: {el['textContent']}")
        if el.get("attributes"):
            attrs = json.dumps(el["attributes"], ensure_ascii=False, separators=(",", ":"))
            lines.append(f"Attributes: {attrs}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) or None


def extract_screenshots(parts: list[Any]) -> list[str]:
    """Payloads of image file attachments, in order.

    Accepts MessagePart objects or raw part dicts.
    """
    screenshots = []
    for part in parts:
        if isinstance(part, dict):
            part_type = part.get("type")
            mime_type = part.get("mimeType")
            data = part.get("data")
        else:
            part_type = getattr(part, "type", None)
            mime_type = getattr(part, "mime_type", None)
            data = getattr(part, "data", None)
        if part_type != "file" or not str(mime_type or "").startswith("image/"):
            continue
        if data:
            screenshots.append(data)
    return screenshots


def extract_plugin_snippets(
    plugin_content_items: dict[str, dict[str, Any]] | None,
) -> list[str]:
    """Flatten plugin -> item -> {text} into labeled snippets.

    A plugin whose items are not an object contributes nothing.
    """
    if not isinstance(plugin_content_items, dict):
        return []

    snippets = []
    for plugin_name, items in plugin_content_items.items():
        if not isinstance(items, dict):
            continue
        for item_name, item in items.items():
            text = item.get("text", "") if isinstance(item, dict) else str(item)
            snippets.append(f"[{plugin_name}/{item_name}]\n{text}")
    return snippets


def compose_input(message: ChatMessage) -> PromptInput:
    """Collect the prompt inputs carried by a user message."""
    browser_data = message.metadata.browser_data
    if not isinstance(browser_data, dict):
        browser_data = {}
    return PromptInput(
        text=message.first_text(),
        dom_context=serialize_dom_context(browser_data.get("selectedElements")),
        screenshots=extract_screenshots(message.parts),
        plugin_snippets=extract_plugin_snippets(message.metadata.plugin_content_items),
    )
