"""Per-call statistics record and policy flags."""

from dataclasses import asdict, dataclass, field
from typing import Any

BLOCK = "block"
REDACT = "redact"
AUDIT = "audit"


@dataclass
class PolicyFlag:
    description: str
    source: str  # name of the processor that raised it
    action: str = AUDIT  # block | redact | audit


@dataclass
class StatsRecord:
    """Built up through the call lifecycle, uploaded once at the end."""

    endpoint: str
    config_cached: bool = False
    flags: list[PolicyFlag] = field(default_factory=list)
    error: bool = False
    autorouted: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    request: dict | None = None
    response: Any = None

    def add_flag(self, flag: PolicyFlag) -> None:
        self.flags.append(flag)
        if flag.action == BLOCK:
            self.error = True

    def flag_summary(self) -> str:
        return ", ".join(f.description for f in self.flags)

    def snapshot(self) -> dict[str, Any]:
        """Deep copy for upload; later mutation of the record does not leak in."""
        data = asdict(self)
        if data["request"] is None:
            del data["request"]
        return data
