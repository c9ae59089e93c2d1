"""Usage statistics upload to the policy service.

Uploads fail open: an unreachable or erroring stats endpoint is logged and
never changes what the client receives.

In detached mode (ASYNC_STATS_UPLOAD) the upload runs as a background task
the caller never awaits. Do not enable it on Lambda, where the execution
environment is frozen as soon as the response is returned.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from usage_proxy.config.settings import get_settings
from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.stats.models import StatsRecord

UPLOAD_TIMEOUT_SECONDS = 3.5

Uploader = Callable[[StatsRecord], Awaitable[None]]


class StatsReporter:
    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(UPLOAD_TIMEOUT_SECONDS))
        return self._client

    def uploader(self, method: str, url: str, tenant_key: str | None) -> Uploader:
        """Build the upload function for one call."""

        async def upload(stats: StatsRecord) -> None:
            logger = get_audit_logger()
            settings = get_settings()

            if method.lower() != "post":
                logger.debug(f"Skipping stats upload for {method} method endpoint {url}")
                return
            if settings.local_mode:
                logger.debug("Local mode enabled; skipping stats upload")
                return
            if not tenant_key:
                logger.debug("No tenant key established; skipping stats upload")
                return

            payload = stats.snapshot()
            if settings.async_stats_upload:
                logger.debug("Async stats upload mode enabled; not waiting for upload")
                task = asyncio.create_task(self._send(tenant_key, payload))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                await self._send(tenant_key, payload)

        return upload

    async def _send(self, tenant_key: str, payload: dict[str, Any]) -> None:
        logger = get_audit_logger()
        settings = get_settings()
        try:
            client = await self._get_client()
            response = await client.post(
                f"{settings.policy_api_url.rstrip('/')}/proxy",
                json=payload,
                headers={"x-up-key": tenant_key},
                timeout=UPLOAD_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            logger.debug("Uploaded stats")
        except Exception as e:
            # Telemetry must never affect the client-visible outcome
            logger.error(
                "Error uploading stats. Failing open.",
                extra={"audit_data": {"error": str(e), "error_type": type(e).__name__}},
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for detached uploads still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
