"""Ordered execution of policy processors."""

from collections.abc import Mapping, Sequence
from typing import Any

from usage_proxy.logging.audit import get_audit_logger
from usage_proxy.policy.base import CallState, Processor
from usage_proxy.proxy.responses import INVALID_REQUEST, ProxyResponse, error_response
from usage_proxy.stats.models import StatsRecord


def activation_value(headers: Mapping[str, str], config: Mapping[str, Any], processor: Processor) -> Any:
    """Header override, else config option, else None.

    Scalars come back as lower-cased strings; lists and dicts from config
    are returned unchanged.
    """
    if processor.header and headers.get(processor.header) is not None:
        return str(headers[processor.header]).lower()

    if processor.config_field and config.get(processor.config_field) is not None:
        value = config[processor.config_field]
        if isinstance(value, (list, dict)):
            return value
        return str(value).lower()

    return None


async def run_stage(
    processors: Sequence[Processor],
    headers: Mapping[str, str],
    config: Mapping[str, Any],
    call: CallState,
) -> ProxyResponse | None:
    """Run processors in order; stop at the first one returning a response."""
    for processor in processors:
        value = activation_value(headers, config, processor)
        response = await processor.run(value, call)
        if response is not None:
            get_audit_logger().debug(
                "Processor returned a terminal response",
                extra={"audit_data": {"processor": processor.name, "status": response.status_code}},
            )
            return response
    return None


def blocked_response(stats: StatsRecord) -> ProxyResponse:
    """Invalid-request error listing every accumulated flag."""
    response = error_response(422, INVALID_REQUEST, f"Usage proxy: {stats.flag_summary()}")
    stats.response = response.body
    return response
