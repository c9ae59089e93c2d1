"""Credential validation for inbound calls.

Each call carries two credentials:
- the tenant key (x-up-api-key), which selects the policy configuration
- the upstream key (authorization), which is forwarded to the LLM service

Either may be omitted when a fallback is configured in settings.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass

from usage_proxy.config.settings import get_settings
from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.proxy.responses import ACCESS_DENIED, ProxyError

TENANT_KEY_HEADER = "x-up-api-key"
UPSTREAM_KEY_HEADER = "authorization"

CHAT_SCOPE_PREFIX = "up-chat"
CHAT_ENDPOINT = "/v1/chat/completions"

_TENANT_KEY_RE = re.compile(r"^up-[0-9a-zA-Z]{48}$")
_UPSTREAM_KEY_RE = re.compile(r"^Bearer (sk-[0-9a-zA-Z]{48}|[a-z0-9]{32})$")


@dataclass
class Credentials:
    tenant_key: str | None
    upstream_key: str


def _deny(message: str, log_message: str) -> ProxyError:
    get_audit_logger().warning(log_message)
    return ProxyError(403, ACCESS_DENIED, message)


def extract_tenant_key(headers: Mapping[str, str] | None) -> str | None:
    """Validate the tenant key alone; raises ProxyError (access_denied).

    Lets callers know which tenant a call belongs to before the upstream key
    and endpoint scope are checked.
    """
    if headers is None:
        raise _deny("No API keys found in headers", "No headers in request")

    settings = get_settings()
    tenant_key = headers.get(TENANT_KEY_HEADER) or settings.policy_api_key or None
    if not settings.local_mode and not (tenant_key and _TENANT_KEY_RE.match(tenant_key)):
        raise _deny(
            "Invalid usage proxy API key",
            "Invalid tenant key. Pass the x-up-api-key header or set POLICY_API_KEY.",
        )
    return tenant_key


def extract_credentials(headers: Mapping[str, str] | None, endpoint: str) -> Credentials:
    """Validate the tenant and upstream credentials for a call to endpoint.

    Headers must use lower-case names. Raises ProxyError (access_denied).
    """
    tenant_key = extract_tenant_key(headers)
    settings = get_settings()

    upstream_key = headers.get(UPSTREAM_KEY_HEADER)
    if not upstream_key and settings.upstream_api_key:
        upstream_key = f"Bearer {settings.upstream_api_key}"
    if not (upstream_key and _UPSTREAM_KEY_RE.match(upstream_key)):
        raise _deny(
            "Invalid upstream API key",
            "Invalid upstream key. Pass the authorization header or set UPSTREAM_API_KEY.",
        )

    if tenant_key and tenant_key.startswith(CHAT_SCOPE_PREFIX) and endpoint != CHAT_ENDPOINT:
        raise _deny(
            f"Chat API keys can only be used for the {CHAT_ENDPOINT} endpoint",
            "Chat-scoped tenant key used for non-chat endpoint",
        )

    return Credentials(tenant_key=tenant_key, upstream_key=upstream_key)
