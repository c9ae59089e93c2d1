"""Response envelope shared by every outcome of a proxied call.

Upstream responses, synthesized completions and errors all leave the proxy
as a ProxyResponse carrying the configured CORS headers.
"""

import time
from dataclasses import dataclass, field
from typing import Any

from usage_proxy.config.settings import get_settings

ACCESS_DENIED = "access_denied"
INVALID_REQUEST = "invalid_request"
SERVER_ERROR = "server_error"


@dataclass
class ProxyResponse:
    status_code: int
    body: Any  # any JSON value; upstream bodies pass through unchanged
    headers: dict[str, str] = field(default_factory=dict)
    is_error: bool = False  # upstream reported (or transport produced) an error


class ProxyError(Exception):
    """A rejected call, rendered to the client as an error envelope."""

    def __init__(self, status_code: int, error_type: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.message = message

    def to_response(self) -> ProxyResponse:
        return error_response(self.status_code, self.error_type, self.message)


def cors_headers() -> dict[str, str]:
    return dict(get_settings().cors_headers)


def error_response(status_code: int, error_type: str, message: str) -> ProxyResponse:
    return ProxyResponse(
        status_code=status_code,
        headers=cors_headers(),
        body={
            "error": {
                "message": message,
                "type": error_type,
                "param": None,
                "code": None,
            }
        },
    )


def options_response() -> ProxyResponse:
    return ProxyResponse(status_code=200, headers=cors_headers(), body={})


_ZERO_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def completion_response(model: str | None, text: str) -> ProxyResponse:
    """Synthesized text completion in the upstream's response schema."""
    return ProxyResponse(
        status_code=200,
        headers=cors_headers(),
        body={
            "id": "cmpl-usageproxy",
            "object": "text_completion",
            "created": int(time.time()),
            "model": model or "text-davinci-003",
            "choices": [{
                "text": text,
                "index": 0,
                "logprobs": None,
                "finish_reason": "stop",
            }],
            "usage": dict(_ZERO_USAGE),
        },
    )


def chat_completion_response(model: str | None, text: str) -> ProxyResponse:
    """Synthesized chat completion in the upstream's response schema."""
    return ProxyResponse(
        status_code=200,
        headers=cors_headers(),
        body={
            "id": "chatcmpl-usageproxy",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model or "gpt-3.5-turbo",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }],
            "usage": dict(_ZERO_USAGE),
        },
    )
