"""Processor contract for the policy pipeline."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from usage_proxy.proxy.responses import ProxyResponse
from usage_proxy.stats.models import PolicyFlag, StatsRecord

if TYPE_CHECKING:
    from usage_proxy.proxy.forwarder import UpstreamForwarder


@dataclass
class CallState:
    """Call-scoped data handed to every processor.

    `request` and `response` may be replaced by processors (e.g. redaction);
    later processors see the replacement. `config` is read-only.
    """

    endpoint: str
    config: Mapping[str, Any]
    stats: StatsRecord
    request: dict = field(default_factory=dict)
    response: dict | None = None
    upstream_key: str = ""
    upstream_base: str = ""
    forwarder: "UpstreamForwarder | None" = None


class Processor(ABC):
    """A single policy check.

    The activation value passed to run() comes from `header` if the call
    sent it, else from the `config_field` option, else None.
    """

    name: str = "processor"
    header: str | None = None
    config_field: str | None = None

    @abstractmethod
    async def run(self, value: Any, call: CallState) -> ProxyResponse | None:
        """Inspect or mutate the call. A returned response ends the stage."""
        ...

    def flag(self, call: CallState, description: str, action: str) -> None:
        call.stats.add_flag(PolicyFlag(description=description, source=self.name, action=action))
