"""Tenant policy configuration resolution.

Returns the effective configuration for a tenant credential: local
defaults, overlaid by the tenant's remote configuration when one can be
obtained (from the cache or the policy service). When the remote config
cannot be loaded the result carries a server error *and* the local
defaults, so the caller can choose between failing closed and failing open.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import httpx

from usage_proxy.config.cache import ConfigCache
from usage_proxy.config.settings import get_settings
from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.proxy.responses import SERVER_ERROR, ProxyError

# Remote payloads missing this field are treated as malformed
REQUIRED_FIELD = "llm_api_base_path"
CACHEABLE_FIELD = "cache_enabled"


@dataclass
class ConfigResult:
    config: Mapping[str, Any]
    from_cache: bool
    error: ProxyError | None = None

    @property
    def fail_open(self) -> bool:
        return bool(self.config.get("fail_open_on_config_error"))


def normalize_remote(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Remote configs use upper-case option names; local ones are lower-case."""
    return {str(key).lower(): value for key, value in payload.items()}


def merge_config(defaults: Mapping[str, Any], remote: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType({**defaults, **remote})


class ConfigResolver:
    """Loads tenant configs from the policy service through a ConfigCache."""

    def __init__(self, cache: ConfigCache, client: httpx.AsyncClient | None = None):
        self._cache = cache
        self._client = client

    @property
    def cache(self) -> ConfigCache:
        return self._cache

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def resolve(self, tenant_key: str | None) -> ConfigResult:
        settings = get_settings()
        logger = get_audit_logger()
        defaults = settings.local_defaults()

        if settings.local_mode:
            logger.debug("Local mode enabled; using local config")
            return ConfigResult(config=MappingProxyType(defaults), from_cache=True)

        self._cache.sweep_if_due()
        cached = self._cache.get(tenant_key) if tenant_key else None
        if cached is not None:
            logger.debug("Loaded config from cache")
            return ConfigResult(config=merge_config(defaults, cached), from_cache=True)

        logger.debug("No cached config; fetching from policy service")
        try:
            remote = await self._fetch(tenant_key, settings.policy_api_url)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Failed to load tenant config",
                extra={"audit_data": {"error": str(e), "error_type": type(e).__name__}},
            )
            return self._fallback(defaults, "Server error loading proxy config")

        if not remote or not remote.get(REQUIRED_FIELD):
            logger.error("Tenant config response missing required fields")
            return self._fallback(defaults, "Error loading proxy config")

        if remote.get(CACHEABLE_FIELD):
            self._cache.put(tenant_key, remote)

        logger.debug(
            "Loaded config from policy service",
            extra={"audit_data": {"cacheable": bool(remote.get(CACHEABLE_FIELD))}},
        )
        return ConfigResult(config=merge_config(defaults, remote), from_cache=False)

    async def _fetch(self, tenant_key: str | None, base_url: str) -> dict[str, Any] | None:
        client = await self._get_client()
        response = await client.get(
            f"{base_url.rstrip('/')}/proxy",
            headers={"x-up-key": tenant_key or ""},
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            return None
        return normalize_remote(payload)

    @staticmethod
    def _fallback(defaults: dict[str, Any], message: str) -> ConfigResult:
        return ConfigResult(
            config=MappingProxyType(defaults),
            from_cache=True,
            error=ProxyError(500, SERVER_ERROR, message),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
