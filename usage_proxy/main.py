"""Usage Proxy — FastAPI application entry point.

A policy proxy that sits between applications and an OpenAI-compatible
LLM API, enforcing tenant usage policy and reporting usage statistics.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from usage_proxy.logging.audit import get_audit_logger, setup_logging
from usage_proxy.proxy.orchestrator import InboundCall, close_orchestrator, get_orchestrator

VERSION = "0.1.0"

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    orchestrator = get_orchestrator()
    sweeper = asyncio.create_task(orchestrator.resolver.cache.run_sweeper())
    get_audit_logger().info("Proxy started")
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await close_orchestrator()
    get_audit_logger().info("Proxy stopped")


app = FastAPI(
    title="Usage Proxy",
    description="Policy-enforcing proxy for LLM API requests",
    version=VERSION,
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(path: str, request: Request):
    """Hand every other call to the orchestrator."""
    call = InboundCall(
        method=request.method,
        path=request.url.path,
        headers={k.lower(): v for k, v in request.headers.items()},
        body=await request.body(),
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    result = await get_orchestrator().handle(call)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)
