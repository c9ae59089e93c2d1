"""Pre-call policy processors.

Run after the tenant config is resolved and before the upstream call, in
the order of PREPROCESSORS. Blocking checks only add a block flag; the
orchestrator turns accumulated block flags into a single 422 once the
stage has finished.
"""

import copy
from abc import abstractmethod
from typing import Any

from usage_proxy.config.settings import get_settings
from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.policy.base import CallState, Processor
from usage_proxy.policy.content import (
    last_user_message,
    prompt_text,
    request_texts,
    rewrite_request,
)
from usage_proxy.policy.wordlist import match_wordlist
from usage_proxy.proxy.responses import (
    ProxyResponse,
    chat_completion_response,
    completion_response,
)
from usage_proxy.stats.models import AUDIT, BLOCK, REDACT

CHAT_ENDPOINT = "/v1/chat/completions"
COMPLETION_ENDPOINT = "/v1/completions"

# Endpoints whose request schema accepts a `user` field
USER_ID_ENDPOINTS = {
    COMPLETION_ENDPOINT,
    CHAT_ENDPOINT,
    "/v1/embeddings",
    "/v1/images/generations",
}

_WORDLIST_ACTIONS = {BLOCK, REDACT, AUDIT}


def as_list(value: Any) -> list[str]:
    """Config lists stay lists; header values are comma-separated."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip().lower() for v in value if str(v).strip()]
    return [v.strip().lower() for v in str(value).split(",") if v.strip()]


def as_limit(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(value)


def parse_wordlist_setting(value: Any) -> list[tuple[str, str]]:
    """Parse "profanity:block,dan:redact,custom:audit" into (name, action) pairs."""
    entries = []
    for item in as_list(value):
        name, _, action = item.partition(":")
        action = action.strip() or AUDIT
        if action not in _WORDLIST_ACTIONS:
            raise ValueError(f"Unknown wordlist action {action!r} for {name!r}")
        entries.append((name.strip(), action))
    return entries


class WordlistProcessor(Processor):
    """Shared block/redact/audit logic for request and response wordlists."""

    target = "Request"

    @abstractmethod
    def texts(self, call: CallState) -> list[str]:
        """Texts the wordlists scan."""

    @abstractmethod
    def rewrite(self, call: CallState, fn) -> None:
        """Apply fn to every scanned text in place of the originals."""

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        if not value:
            return None

        wordlist_dir = get_settings().wordlist_dir
        redaction = call.config.get("redaction_string") or "****"
        custom = list(call.config.get("policy_custom_wordlist") or [])

        for name, action in parse_wordlist_setting(value):
            custom_list = custom if name == "custom" else None

            def scan(text: str, name=name, custom_list=custom_list):
                return match_wordlist(name, text, custom_list, redaction, wordlist_dir)

            patterns: list[str] = []
            for text in self.texts(call):
                for pattern in scan(text).patterns:
                    if pattern not in patterns:
                        patterns.append(pattern)
            if not patterns:
                continue

            get_audit_logger().info(
                f"{self.target} matched wordlist",
                extra={"audit_data": {"wordlist": name, "action": action, "patterns": patterns}},
            )
            self.flag(
                call,
                f"{self.target} matched {name} wordlist: {', '.join(patterns)}",
                action,
            )
            if action == REDACT:
                self.rewrite(call, lambda text, scan=scan: scan(text).redacted)
        return None


class DisabledModels(Processor):
    name = "disabled_models"
    header = "x-up-disabled-models"
    config_field = "policy_disabled_models"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        disabled = as_list(value)
        if not disabled:
            return None
        # Image endpoints select a "model" through the size field
        for key in ("model", "size"):
            requested = call.request.get(key)
            if isinstance(requested, str) and requested.lower() in disabled:
                self.flag(call, f"The {requested} model is disabled", BLOCK)
        return None


class RequireUserId(Processor):
    name = "enforce_user_ids"
    header = "x-up-enforce-user-ids"
    config_field = "policy_enforce_user_ids"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        if value != "true" or call.endpoint not in USER_ID_ENDPOINTS:
            return None
        if not call.request.get("user"):
            self.flag(call, "Request is missing the required user field", BLOCK)
        return None


class MaxTokens(Processor):
    name = "max_tokens"
    header = "x-up-max-tokens"
    config_field = "policy_max_tokens"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        limit = as_limit(value)
        requested = call.request.get("max_tokens")
        if limit > 0 and isinstance(requested, int) and requested > limit:
            self.flag(call, f"max_tokens of {requested} exceeds the limit of {limit}", BLOCK)
        return None


class MaxPromptChars(Processor):
    name = "max_prompt_chars"
    header = "x-up-max-prompt-chars"
    config_field = "policy_max_prompt_chars"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        limit = as_limit(value)
        if limit <= 0:
            return None
        size = len(prompt_text(call.request))
        if size > limit:
            self.flag(call, f"Prompt length of {size} characters exceeds the limit of {limit}", BLOCK)
        return None


class RequestWordlist(WordlistProcessor):
    name = "request_wordlist"
    header = "x-up-request-wordlist"
    config_field = "policy_request_wordlist"
    target = "Request"

    def texts(self, call: CallState) -> list[str]:
        return request_texts(call.request)

    def rewrite(self, call: CallState, fn) -> None:
        call.request = rewrite_request(call.request, fn)


class AutoModerate(Processor):
    """Send the prompt to the upstream moderation endpoint before the call."""

    name = "auto_moderate"
    header = "x-up-auto-moderate"
    config_field = "policy_auto_moderate"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        if value != "true" or call.forwarder is None:
            return None
        if call.config.get("azure_resource_name"):
            get_audit_logger().debug("Moderation is not available for Azure deployments; skipping")
            return None
        text = prompt_text(call.request)
        if not text.strip():
            return None

        result = await call.forwarder.forward(
            "post",
            f"{call.upstream_base}/v1/moderations",
            {"authorization": call.upstream_key},
            {"input": text},
        )
        if result.is_error:
            raise RuntimeError(f"Moderation request failed with status {result.status_code}")

        results = result.body.get("results", []) if isinstance(result.body, dict) else []
        flagged = [item for item in results if item.get("flagged")]
        if flagged:
            categories = {k for item in flagged for k, hit in item.get("categories", {}).items() if hit}
            detail = f": {', '.join(sorted(set(categories)))}" if categories else ""
            self.flag(call, f"Request flagged by moderation{detail}", BLOCK)
        return None


class AutoReply(Processor):
    """Answer configured prompts directly, without calling upstream.

    Rules look like {"type": "chat", "request": "hello", "response": "Hi!"}
    with type "chat" or "completion"; the request must match exactly,
    ignoring case and surrounding whitespace.
    """

    name = "autoreply"
    header = "x-up-autoreply"
    config_field = "policy_autoreply"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        # Never short-circuit a call that is already going to be blocked
        if not isinstance(value, list) or call.stats.error:
            return None

        for rule in value:
            kind = rule.get("type", "chat")
            if kind == "chat" and call.endpoint == CHAT_ENDPOINT:
                asked = last_user_message(call.request)
            elif kind == "completion" and call.endpoint == COMPLETION_ENDPOINT:
                asked = call.request.get("prompt")
            else:
                continue
            if not isinstance(asked, str):
                continue
            if asked.strip().lower() != str(rule.get("request", "")).strip().lower():
                continue

            model = call.request.get("model")
            if kind == "chat":
                response = chat_completion_response(model, rule.get("response", ""))
            else:
                response = completion_response(model, rule.get("response", ""))
            call.stats.autorouted = {"autoreply": True, "type": kind}
            call.stats.response = copy.deepcopy(response.body)
            return response
        return None


class LogRequest(Processor):
    name = "log_request"
    header = "x-up-log-request"
    config_field = "policy_log_request"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        if value == "true":
            call.stats.request = copy.deepcopy(call.request)
        return None


PREPROCESSORS: list[Processor] = [
    DisabledModels(),
    RequireUserId(),
    MaxTokens(),
    MaxPromptChars(),
    RequestWordlist(),
    AutoModerate(),
    AutoReply(),
    LogRequest(),
]
