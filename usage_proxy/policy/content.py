"""Locate and rewrite the user-generated text inside request/response bodies.

Covers the completion, chat completion, edit, embedding and moderation
request shapes, and the completion / chat completion response shapes.
"""

import copy
from collections.abc import Callable

Rewrite = Callable[[str], str]


def _rewrite_value(value, fn: Rewrite):
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [fn(v) if isinstance(v, str) else v for v in value]
    return value


def _message_texts(content) -> list[str]:
    if isinstance(content, str):
        return [content]
    parts = []
    if isinstance(content, list):
        # Multi-part content (text + image_url)
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
    return parts


def request_texts(body: dict) -> list[str]:
    texts: list[str] = []
    for key in ("prompt", "input", "instruction"):
        value = body.get(key)
        if isinstance(value, str):
            texts.append(value)
        elif isinstance(value, list):
            texts.extend(v for v in value if isinstance(v, str))
    for msg in body.get("messages", None) or []:
        if isinstance(msg, dict):
            texts.extend(_message_texts(msg.get("content")))
    return texts


def prompt_text(body: dict) -> str:
    return "\n".join(request_texts(body))


def rewrite_request(body: dict, fn: Rewrite) -> dict:
    """Return a copy of body with fn applied to every user text field."""
    new_body = copy.deepcopy(body)
    for key in ("prompt", "input", "instruction"):
        if key in new_body:
            new_body[key] = _rewrite_value(new_body[key], fn)
    for msg in new_body.get("messages", None) or []:
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            msg["content"] = fn(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    part["text"] = fn(part.get("text", ""))
    return new_body


def response_texts(body: dict) -> list[str]:
    texts = []
    for choice in body.get("choices", None) or []:
        if not isinstance(choice, dict):
            continue
        if isinstance(choice.get("text"), str):
            texts.append(choice["text"])
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            texts.append(message["content"])
    return texts


def rewrite_response(body: dict, fn: Rewrite) -> dict:
    """Return a copy of body with fn applied to every completion text."""
    new_body = copy.deepcopy(body)
    for choice in new_body.get("choices", None) or []:
        if not isinstance(choice, dict):
            continue
        if isinstance(choice.get("text"), str):
            choice["text"] = fn(choice["text"])
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            message["content"] = fn(message["content"])
    return new_body


def last_user_message(body: dict) -> str | None:
    for msg in reversed(body.get("messages", None) or []):
        if isinstance(msg, dict) and msg.get("role") == "user":
            return "\n".join(_message_texts(msg.get("content")))
    return None
