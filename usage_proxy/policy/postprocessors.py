"""Post-call policy processors, run in order on successful upstream responses."""

import copy
import re
from typing import Any

from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.policy.base import CallState, Processor
from usage_proxy.policy.content import prompt_text, response_texts, rewrite_response
from usage_proxy.policy.preprocessors import WordlistProcessor
from usage_proxy.proxy.responses import ProxyResponse
from usage_proxy.stats.models import AUDIT, BLOCK, REDACT

_REFLECTION_MODES = {AUDIT, REDACT, BLOCK}


class ResponseWordlist(WordlistProcessor):
    name = "response_wordlist"
    header = "x-up-response-wordlist"
    config_field = "policy_response_wordlist"
    target = "Response"

    def texts(self, call: CallState) -> list[str]:
        return response_texts(call.response or {})

    def rewrite(self, call: CallState, fn) -> None:
        call.response = rewrite_response(call.response or {}, fn)


def protected_segments(prompt: str, delimiter: str) -> list[str]:
    """Prompt text wrapped in delimiters, e.g. "||secret instructions||"."""
    if not delimiter:
        return []
    d = re.escape(delimiter)
    return [s.strip() for s in re.findall(f"{d}(.+?){d}", prompt, re.DOTALL) if s.strip()]


class PromptReflection(Processor):
    """Detect delimited prompt segments echoed back in the completion."""

    name = "prompt_reflection"
    header = "x-up-prompt-reflection"
    config_field = "policy_prompt_reflection"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        if value not in _REFLECTION_MODES or not call.response:
            return None

        delimiter = call.config.get("prompt_reflection_delimiter") or ""
        segments = protected_segments(prompt_text(call.request), delimiter)
        completion = "\n".join(response_texts(call.response)).lower()
        reflected = [s for s in segments if s.lower() in completion]
        if not reflected:
            return None

        get_audit_logger().info(
            "Prompt reflection detected",
            extra={"audit_data": {"action": value, "segments": len(reflected)}},
        )
        self.flag(call, "Prompt reflection detected in response", value)

        if value == REDACT:
            redaction = call.config.get("redaction_string") or "****"
            patterns = [re.compile(re.escape(s), re.IGNORECASE) for s in reflected]

            def redact(text: str) -> str:
                for pattern in patterns:
                    text = pattern.sub(lambda _: redaction, text)
                return text

            call.response = rewrite_response(call.response, redact)
        return None


class LogResponse(Processor):
    """Attach the response to stats, without completions unless enabled."""

    name = "log_response"
    header = "x-up-log-response"
    config_field = "policy_log_response"

    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        captured = copy.deepcopy(call.response or {})

        data = captured.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("object") == "embedding":
            del captured["data"]

        if value != "true":
            captured.pop("choices", None)  # completions, chat completions, edits
            captured.pop("data", None)  # images

        call.stats.response = captured
        return None


POSTPROCESSORS: list[Processor] = [
    ResponseWordlist(),
    PromptReflection(),
    LogResponse(),
]
