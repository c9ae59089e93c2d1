"""In-memory cache of remote tenant configurations.

Entries do not expire individually. The whole cache is cleared once per
period, either by the background sweeper task or lazily on access when a
full period has elapsed since the last sweep (Lambda freezes the process
between invocations, so no background task runs there). An entry can thus
live anywhere between zero and one full period.

The cache is shared by every in-flight call without locking; concurrent
writes for the same key are last-writer-wins.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from usage_proxy.logging.audit import get_audit_logger


class ConfigCache:
    """Tenant credential -> last remote configuration."""

    def __init__(self, lifetime_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._lifetime = lifetime_seconds
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] = {}
        self._last_sweep = clock()

    @property
    def lifetime_seconds(self) -> float:
        return self._lifetime

    @property
    def enabled(self) -> bool:
        """A lifetime of zero or less disables caching."""
        return self._lifetime > 0

    def get(self, key: str) -> dict[str, Any] | None:
        return self._entries.get(key)

    def put(self, key: str, config: dict[str, Any]) -> None:
        if self.enabled:
            self._entries[key] = config

    def clear(self) -> None:
        self._entries = {}
        self._last_sweep = self._clock()

    def sweep_if_due(self) -> bool:
        """Clear everything if a full period has passed since the last sweep."""
        if self._clock() - self._last_sweep >= self._lifetime:
            get_audit_logger().debug(
                "Config cache swept",
                extra={"audit_data": {"entries": len(self._entries)}},
            )
            self.clear()
            return True
        return False

    async def run_sweeper(self) -> None:
        """Clear the cache once per period until cancelled."""
        if not self.enabled:
            get_audit_logger().debug("Config cache disabled; sweeper not started")
            return
        while True:
            await asyncio.sleep(self._lifetime)
            self.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
