from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from open_llm_proxy.bootstrap import ProxyBootstrap, build_proxy_initializer
from open_llm_proxy.config import ProxyConfig, load_proxy_config
from open_llm_proxy.discovery import RetryPolicy
from open_llm_proxy.errors import ProxyError, error_response
from open_llm_proxy.gateway.auth import ProxyAuthenticator
from open_llm_proxy.gateway.cors import apply_cors_headers, preflight_response
from open_llm_proxy.gateway.proxy import UpstreamForwarder
from open_llm_proxy.router import RequestRouter
from open_llm_proxy.settings import Settings, get_settings

app = FastAPI(
    title="Open-LLM Proxy",
    description="Unified OpenAI-compatible endpoint over several upstream providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def _build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_read_timeout_seconds),
            write=max(0.1, settings.upstream_write_timeout_seconds),
            pool=max(0.1, settings.upstream_pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )


@app.middleware("http")
async def gateway_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS":
        return preflight_response()

    authenticator: ProxyAuthenticator = app.state.authenticator
    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return apply_cors_headers(auth_error)

    bootstrap: ProxyBootstrap = app.state.bootstrap
    try:
        await bootstrap.ensure_ready()
    except Exception as exc:
        # Already logged by the bootstrap; every caller sees the same failure.
        return apply_cors_headers(
            error_response(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                message=str(exc),
                error_type="server_error",
                code="bootstrap_failed",
            )
        )

    response = await call_next(request)
    return apply_cors_headers(response)


def _request_router() -> RequestRouter:
    bootstrap: ProxyBootstrap = app.state.bootstrap
    runtime = bootstrap.runtime
    if runtime is None:
        raise RuntimeError("Proxy runtime is not initialized.")
    return RequestRouter(runtime, app.state.forwarder)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    proxy_config = load_proxy_config(settings.proxy_config_path)
    http_client = _build_http_client(settings)
    retry_policy = RetryPolicy(
        max_attempts=max(1, settings.discovery_max_attempts),
        base_delay_seconds=max(0.0, settings.discovery_retry_base_delay_seconds),
    )
    authenticator = ProxyAuthenticator(settings)

    app.state.proxy_config = proxy_config
    app.state.authenticator = authenticator
    app.state.forwarder = UpstreamForwarder(http_client)
    app.state.bootstrap = ProxyBootstrap(
        build_proxy_initializer(
            config=proxy_config,
            client=http_client,
            retry_policy=retry_policy,
            environ=settings.provider_environ(),
        )
    )
    if settings.proxy_eager_bootstrap:
        app.state.bootstrap.start()

    if authenticator.proxy_auth_key is None:
        logger.warning("proxy_auth_misconfigured env=PROXY_AUTH_KEY")
    logger.info(
        (
            "startup complete proxy_config_path=%s upstreams=%d fallback_models=%d "
            "discovery_max_attempts=%d eager_bootstrap=%s"
        ),
        settings.proxy_config_path,
        len(proxy_config.upstreams),
        len(proxy_config.fallback_models),
        retry_policy.max_attempts,
        settings.proxy_eager_bootstrap,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: UpstreamForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    logger.info("shutdown complete")


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return _request_router().models_response()


@app.api_route("/v1/{subpath:path}", methods=FORWARDED_METHODS)
async def v1_forward(subpath: str, request: Request) -> Response:
    return await _request_router().forward(request)


@app.api_route("/{fallback_path:path}", methods=[*FORWARDED_METHODS, "HEAD"])
async def redirect_unknown(fallback_path: str) -> RedirectResponse:
    proxy_config: ProxyConfig = app.state.proxy_config
    return RedirectResponse(
        url=proxy_config.redirect_url, status_code=status.HTTP_302_FOUND
    )


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> JSONResponse:
    return exc.to_response()


def run() -> None:
    import uvicorn

    uvicorn.run("open_llm_proxy.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
