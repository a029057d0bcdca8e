"""
HTTP surface of the proxy.

- `/healthz`, `/readyz`: probes (public).
- `/api/v1/rules...`: rule management (see rules.py).
- everything else: authenticated, authorized, label-injected and forwarded upstream.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from requests.structures import CaseInsensitiveDict

from dsproxy.api.rules import build_rules_router
from dsproxy.errors import ProxyError
from dsproxy.pipeline import RequestContext
from dsproxy.proxy.rewrite import parse_params
from dsproxy.proxy.upstream import iter_body, response_headers

if TYPE_CHECKING:
    from dsproxy.config import ProxyConfig
    from dsproxy.runtime import ProxyRuntime

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(runtime: "ProxyRuntime") -> FastAPI:
    app = FastAPI(title="dsproxy", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.runtime = runtime

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s - %d %s", request.method, request.url.path, exc.status_code, exc.reason)
        # No WWW-Authenticate header on 401: callers are API clients, not browsers.
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.reason})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/readyz")
    def readyz():
        status = {
            "keys_loaded": runtime.keys.loaded,
            "policy_loaded": runtime.engine.loaded,
        }
        if not runtime.ready:
            return JSONResponse(status_code=503, content={"ok": False, **status})
        return {"ok": True, **status}

    app.include_router(build_rules_router(runtime))

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, full_path: str):
        ctx = RequestContext(
            method=request.method,
            path=request.url.path,
            query=parse_params(request.url.query),
            headers=CaseInsensitiveDict(request.headers.items()),
            body=await request.body(),
            scheme=request.url.scheme,
        )
        resp = await run_in_threadpool(runtime.pipeline.handle, ctx)
        out = StreamingResponse(iter_body(resp), status_code=resp.status_code)
        for k, v in response_headers(resp):
            out.headers.append(k, v)
        return out

    return app


def _uvicorn_log_level(level: str) -> str:
    level = (level or "info").lower()
    return level if level in ["critical", "error", "warning", "info", "debug", "trace"] else "info"


async def _serve_all(servers: List[Any]) -> None:
    """Run every server; when one stops (signal or failure) stop the others too."""
    tasks = [asyncio.create_task(s.serve()) for s in servers]
    while True:
        done, _ = await asyncio.wait(tasks, timeout=0.2, return_when=asyncio.FIRST_COMPLETED)
        if done or any(s.should_exit for s in servers):
            break
    for s in servers:
        s.should_exit = True
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for r in results:
        if isinstance(r, BaseException):
            logger.error("Listener stopped with error: %s", str(r))


def run(runtime: "ProxyRuntime", cfg: "ProxyConfig", *, log_level: str = "info") -> None:
    """Serve the plain listener and, when TLS material exists, the TLS listener."""
    import uvicorn

    app = create_app(runtime)
    common = dict(
        lifespan="off",
        log_level=_uvicorn_log_level(log_level),
        timeout_graceful_shutdown=cfg.shutdown_grace,
        proxy_headers=False,
    )
    servers = [uvicorn.Server(uvicorn.Config(app, host=cfg.http_addr, port=cfg.http_port, **common))]
    logger.info("Starting HTTP listener on %s:%d", cfg.http_addr, cfg.http_port)

    if cfg.tls_enabled:
        servers.append(
            uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=cfg.http_addr,
                    port=cfg.https_port,
                    ssl_certfile=cfg.tls_cert,
                    ssl_keyfile=cfg.tls_key,
                    **common,
                )
            )
        )
        logger.info("Starting HTTPS listener on %s:%d", cfg.http_addr, cfg.https_port)
    else:
        logger.info("TLS certificate not found; HTTPS listener disabled")

    try:
        asyncio.run(_serve_all(servers))
    finally:
        runtime.stop(timeout=float(cfg.shutdown_grace))
