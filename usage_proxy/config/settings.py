"""Application settings loaded from environment variables.

These double as the local default policy configuration: remote tenant
configuration is merged over them field by field.
"""

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings

# Fields that never become part of a policy configuration
_NON_POLICY_FIELDS = {"policy_api_key", "upstream_api_key", "log_level", "audit_log_file"}


class Settings(BaseSettings):
    # Isolated operation: no config fetch, no stats upload, no tenant key check
    local_mode: bool = False
    proxy_id: str = "usage_proxy"

    # Policy configuration service (config fetch + stats upload)
    policy_api_url: str = "https://policy.usageproxy.dev/v1"
    policy_api_key: str = ""  # fallback when x-up-api-key is not sent

    # Upstream LLM service
    upstream_api_key: str = ""  # fallback when authorization is not sent
    llm_api_base_path: str = "https://api.openai.com"

    config_cache_minutes: int = 5
    cors_headers: dict[str, str] = {
        "Access-Control-Allow-Headers": "*",
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "OPTIONS,POST,GET",
        "Content-Type": "application/json",
    }
    redaction_string: str = "****"
    policy_retry_count: int = 0
    prompt_reflection_delimiter: str = "||"

    # Policy options
    policy_disabled_models: list[str] = []
    policy_autoreply: list[dict[str, str]] = []
    policy_request_wordlist: str = ""  # e.g. "profanity:block,dan:redact,custom:audit"
    policy_response_wordlist: str = ""
    policy_custom_wordlist: list[str] = []
    policy_max_tokens: int = 0  # 0 = disabled
    policy_max_prompt_chars: int = 0  # 0 = disabled
    policy_auto_moderate: bool = False
    policy_enforce_user_ids: bool = False
    policy_log_request: bool = False
    policy_log_response: bool = False
    policy_prompt_reflection: str = "none"  # none | audit | redact | block

    # Azure-hosted upstream
    azure_resource_name: str | None = None
    azure_deployment_map: dict[str, str] = {}
    azure_api_version: str = "2023-05-15"

    async_stats_upload: bool = False
    fail_open_on_config_error: bool = False

    wordlist_dir: str = ""  # empty = packaged wordlists

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def local_defaults(self) -> dict[str, Any]:
        """Policy configuration used when no remote tenant config applies."""
        return self.model_dump(exclude=_NON_POLICY_FIELDS)


@lru_cache
def get_settings() -> Settings:
    return Settings()
