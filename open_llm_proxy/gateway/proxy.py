from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator

import httpx
from fastapi.responses import Response, StreamingResponse
from starlette.datastructures import Headers

from open_llm_proxy.errors import UpstreamForwardError

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}
DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization", "content-type"}

PROXY_PATH_PREFIX = "/v1"

logger = logging.getLogger("uvicorn.error")


def describe_request_error(exc: httpx.RequestError) -> str:
    message = str(exc).strip() or repr(exc)
    return f"{exc.__class__.__name__}: {message}"


def build_upstream_url(
    base_url: str, path: str, prefix: str = PROXY_PATH_PREFIX
) -> str:
    upstream_path = path[len(prefix) :] if path.startswith(prefix) else path
    return f"{base_url.rstrip('/')}{upstream_path}"


def build_upstream_headers(incoming_headers: Headers, api_key: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming_headers.items():
        if name.lower() in DROPPED_REQUEST_HEADERS:
            continue
        headers[name] = value
    headers["Authorization"] = f"Bearer {api_key}"
    headers["Content-Type"] = "application/json"
    return headers


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_HEADERS:
            filtered[name] = value
    return filtered


class UpstreamForwarder:
    """Sends rewritten requests upstream and relays the raw response."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def forward(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        stream: bool = False,
    ) -> Response:
        started = time.perf_counter()
        request = self.client.build_request(
            method=method,
            url=url,
            headers=headers,
            content=json.dumps(payload).encode("utf-8"),
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            reason = describe_request_error(exc)
            logger.warning(
                "proxy_request_error method=%s url=%s error=%s", method, url, reason
            )
            raise UpstreamForwardError(f"Failed to forward request: {reason}") from exc

        logger.info(
            "proxy_upstream_response method=%s url=%s status=%d connect_ms=%.2f",
            method,
            url,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        response_headers = _filter_response_headers(upstream.headers)

        # Raw bytes keep any upstream Content-Encoding valid.
        if stream:

            async def stream_generator() -> AsyncIterator[bytes]:
                try:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
                except httpx.RequestError as exc:
                    logger.warning(
                        "proxy_upstream_stream_error url=%s error=%s",
                        url,
                        describe_request_error(exc),
                    )
                finally:
                    await upstream.aclose()

            return StreamingResponse(
                content=stream_generator(),
                status_code=upstream.status_code,
                headers=response_headers,
            )

        try:
            body = b"".join([chunk async for chunk in upstream.aiter_raw()])
        except httpx.RequestError as exc:
            reason = describe_request_error(exc)
            logger.warning("proxy_request_error url=%s error=%s", url, reason)
            raise UpstreamForwardError(f"Failed to forward request: {reason}") from exc
        finally:
            await upstream.aclose()

        return Response(
            content=body,
            status_code=upstream.status_code,
            headers=response_headers,
        )

    async def close(self) -> None:
        await self.client.aclose()
