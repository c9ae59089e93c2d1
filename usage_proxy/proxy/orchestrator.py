"""Request orchestrator — the end-to-end lifecycle of one proxied call.

Gatekeeper -> Config Resolver -> pre-call processors -> Upstream Forwarder
-> post-call processors -> Stats Reporter

Every POST call reports its stats exactly once, after its outcome is
final, whichever stage produced that outcome. Other methods are passed
through to upstream without policy processing or stats.
"""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from usage_proxy.config.cache import ConfigCache
from usage_proxy.config.resolver import ConfigResolver
from usage_proxy.config.settings import get_settings
from usage_proxy.logging.audit import generate_trace_id, get_audit_logger, trace_id_var
from usage_proxy.policy.base import CallState, Processor
from usage_proxy.policy.pipeline import blocked_response, run_stage
from usage_proxy.policy.postprocessors import POSTPROCESSORS
from usage_proxy.policy.preprocessors import PREPROCESSORS
from usage_proxy.proxy.forwarder import (
    UpstreamForwarder,
    normalize_endpoint,
    upstream_base,
    upstream_target,
)
from usage_proxy.proxy.responses import (
    INVALID_REQUEST,
    SERVER_ERROR,
    ProxyError,
    ProxyResponse,
    error_response,
    options_response,
)
from usage_proxy.security.gatekeeper import extract_credentials, extract_tenant_key
from usage_proxy.stats.models import StatsRecord
from usage_proxy.stats.reporter import StatsReporter

TRACE_ID_HEADER = "x-up-trace-id"
ORGANIZATION_HEADER = "openai-organization"


@dataclass
class InboundCall:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)  # lower-case names
    body: str | bytes | None = None
    source_ip: str | None = None
    user_agent: str | None = None


@dataclass
class _CallContext:
    method: str
    endpoint: str
    tenant_key: str | None = None


class RequestOrchestrator:
    def __init__(
        self,
        resolver: ConfigResolver,
        forwarder: UpstreamForwarder,
        reporter: StatsReporter,
        preprocessors: Sequence[Processor] = PREPROCESSORS,
        postprocessors: Sequence[Processor] = POSTPROCESSORS,
    ):
        self.resolver = resolver
        self.forwarder = forwarder
        self.reporter = reporter
        self.preprocessors = list(preprocessors)
        self.postprocessors = list(postprocessors)

    async def handle(self, call: InboundCall) -> ProxyResponse:
        logger = get_audit_logger()
        if call.method.upper() == "OPTIONS":
            logger.debug("CORS response")
            return options_response()

        trace_id_var.set(call.headers.get(TRACE_ID_HEADER) or generate_trace_id())
        ctx = _CallContext(method=call.method.lower(), endpoint=normalize_endpoint(call.path))
        logger.debug(
            "Received new proxy call",
            extra={"audit_data": {"method": call.method.upper(), "path": call.path}},
        )

        stats = StatsRecord(
            endpoint=ctx.endpoint,
            metadata={
                "proxy_id": get_settings().proxy_id,
                "ip_address": call.source_ip,
                "user_agent": call.user_agent,
                "organization": call.headers.get(ORGANIZATION_HEADER),
                "trace_id": call.headers.get(TRACE_ID_HEADER),
            },
        )

        try:
            response = await self._process(call, ctx, stats)
        except ProxyError as e:
            stats.error = True
            response = e.to_response()
            stats.response = response.body
        except Exception:
            logger.exception("Unhandled error while processing call")
            stats.error = True
            response = error_response(500, SERVER_ERROR, "Usage proxy: internal error processing request")
            stats.response = response.body

        if ctx.method == "post":
            upload = self.reporter.uploader(ctx.method, ctx.endpoint, ctx.tenant_key)
            await upload(stats)

        logger.info(
            "Call completed",
            extra={"audit_data": {
                "method": ctx.method.upper(),
                "endpoint": ctx.endpoint,
                "status": response.status_code,
                "error": stats.error,
                "flags": len(stats.flags),
                "config_cached": stats.config_cached,
            }},
        )
        return response

    async def _process(self, call: InboundCall, ctx: _CallContext, stats: StatsRecord) -> ProxyResponse:
        logger = get_audit_logger()

        # Known before the remaining checks so a rejected call still reports under its tenant
        ctx.tenant_key = extract_tenant_key(call.headers)
        credentials = extract_credentials(call.headers, ctx.endpoint)

        result = await self.resolver.resolve(credentials.tenant_key)
        stats.config_cached = result.from_cache
        if result.error is not None:
            if not result.fail_open:
                raise result.error
            logger.warning("Failing open to local config after config load error")
        config = result.config

        extra_headers = {}
        organization = call.headers.get(ORGANIZATION_HEADER)
        if organization:
            extra_headers["OpenAI-Organization"] = organization

        if ctx.method != "post":
            logger.debug(f"Proxy pass-through for non-POST endpoint: {ctx.endpoint}")
            url, auth = upstream_target(config, ctx.endpoint, None, credentials.upstream_key)
            return await self.forwarder.forward(ctx.method, url, {**auth, **extra_headers})

        body = _parse_json_body(call.body)

        state = CallState(
            endpoint=ctx.endpoint,
            config=config,
            stats=stats,
            request=body,
            upstream_key=credentials.upstream_key,
            upstream_base=upstream_base(config),
            forwarder=self.forwarder,
        )

        terminal = await run_stage(self.preprocessors, call.headers, config, state)
        if terminal is not None:
            return terminal
        if stats.error:
            return blocked_response(stats)

        # Deployment routing depends on the (possibly rewritten) body
        url, auth = upstream_target(config, ctx.endpoint, state.request, credentials.upstream_key)
        response = await self.forwarder.forward(
            ctx.method,
            url,
            {**auth, **extra_headers},
            state.request,
            retries=_retry_count(config),
        )
        if response.is_error:
            stats.error = True
            stats.response = response.body
            return response

        if not isinstance(response.body, dict):
            logger.debug("Upstream body is not a JSON object; skipping post-call processors")
            return response

        state.response = response.body
        terminal = await run_stage(self.postprocessors, call.headers, config, state)
        if terminal is not None:
            return terminal
        if stats.error:
            return blocked_response(stats)

        response.body = state.response
        logger.debug(f"Returning {response.status_code} response")
        return response


def _parse_json_body(raw: str | bytes | None) -> dict:
    try:
        body = json.loads(raw or "{}")
    except ValueError:
        raise ProxyError(400, INVALID_REQUEST, "Usage proxy: request body is not valid JSON")
    if not isinstance(body, dict):
        raise ProxyError(400, INVALID_REQUEST, "Usage proxy: request body must be a JSON object")
    return body


def _retry_count(config: Mapping) -> int:
    return int(config.get("policy_retry_count") or 0)


_orchestrator: RequestOrchestrator | None = None


def get_orchestrator() -> RequestOrchestrator:
    """Process-wide orchestrator, built from settings on first use."""
    global _orchestrator
    if _orchestrator is None:
        cache = ConfigCache(lifetime_seconds=get_settings().config_cache_minutes * 60)
        _orchestrator = RequestOrchestrator(
            resolver=ConfigResolver(cache),
            forwarder=UpstreamForwarder(),
            reporter=StatsReporter(),
        )
    return _orchestrator


async def close_orchestrator() -> None:
    """Gracefully close outbound clients on shutdown."""
    global _orchestrator
    if _orchestrator is None:
        return
    await _orchestrator.reporter.close()
    await _orchestrator.forwarder.close()
    await _orchestrator.resolver.close()
    _orchestrator = None
