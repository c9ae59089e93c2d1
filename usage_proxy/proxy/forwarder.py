"""Upstream forwarder — executes the call against the LLM service."""

from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx

from usage_proxy.logging.audit import RequestTimer, get_audit_logger
from usage_proxy.proxy.responses import ProxyResponse, cors_headers

# Statuses worth re-sending the identical request for
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

DEFAULT_BASE_PATH = "https://api.openai.com"


def normalize_endpoint(path: str) -> str:
    """Lower-case the path and make sure it carries the /v1 prefix."""
    endpoint = "/" + path.lstrip("/")
    if not endpoint.lower().startswith("/v1"):
        endpoint = f"/v1{endpoint}"
    return endpoint.lower()


def upstream_base(config: Mapping[str, Any]) -> str:
    """Configured base path without a trailing /v1 (endpoints carry it)."""
    base = str(config.get("llm_api_base_path") or DEFAULT_BASE_PATH).rstrip("/")
    if base.endswith("/v1"):
        base = base[: -len("/v1")]
    return base


def upstream_target(
    config: Mapping[str, Any],
    endpoint: str,
    body: dict | None,
    upstream_key: str,
) -> tuple[str, dict[str, str]]:
    """URL and auth headers for the upstream call.

    With an Azure resource configured, the model is mapped to a deployment
    and the key is sent as api-key instead of a bearer token.
    """
    resource = config.get("azure_resource_name")
    if not resource:
        return f"{upstream_base(config)}{endpoint}", {"authorization": upstream_key}

    model = (body or {}).get("model", "")
    deployment = (config.get("azure_deployment_map") or {}).get(model, model)
    path = endpoint[len("/v1"):] if endpoint.startswith("/v1") else endpoint
    version = config.get("azure_api_version") or "2023-05-15"
    url = (
        f"https://{resource}.openai.azure.com/openai/deployments/"
        f"{quote(str(deployment), safe='')}{path}?api-version={version}"
    )
    return url, {"api-key": upstream_key.removeprefix("Bearer ")}


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        get_audit_logger().warning(
            "Upstream returned a non-JSON body",
            extra={"audit_data": {"upstream_status": response.status_code}},
        )
        return {}
    return body


class UpstreamForwarder:
    """Forwards calls to the upstream LLM API over a shared httpx client."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        return self._client

    async def forward(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: dict | None = None,
        retries: int = 0,
    ) -> ProxyResponse:
        """Send the call, re-sending it unchanged up to `retries` more times.

        Never raises for upstream or transport failures: those come back as
        a ProxyResponse with is_error set.
        """
        logger = get_audit_logger()
        client = await self._get_client()
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body

        attempts = max(0, retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                with RequestTimer() as timer:
                    response = await client.request(method.upper(), url, **kwargs)
            except httpx.HTTPError as e:
                logger.error(
                    "Upstream request failed",
                    extra={"audit_data": {
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "attempt": attempt,
                    }},
                )
                if attempt < attempts:
                    continue
                status = 504 if isinstance(e, httpx.TimeoutException) else 502
                return ProxyResponse(status_code=status, headers=cors_headers(), body={}, is_error=True)

            if response.status_code in RETRYABLE_STATUSES and attempt < attempts:
                logger.warning(
                    "Retrying upstream request",
                    extra={"audit_data": {"upstream_status": response.status_code, "attempt": attempt}},
                )
                continue

            is_error = response.status_code >= 400
            if is_error:
                logger.error(
                    "Upstream returned an error",
                    extra={"audit_data": {"upstream_status": response.status_code}},
                )
            else:
                logger.debug(
                    "Upstream request completed",
                    extra={"audit_data": {
                        "upstream_status": response.status_code,
                        "latency_ms": timer.elapsed_ms,
                    }},
                )
            return ProxyResponse(
                status_code=response.status_code,
                headers=cors_headers(),
                body=_parse_body(response),
                is_error=is_error,
            )

        raise AssertionError("unreachable")  # pragma: no cover

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
