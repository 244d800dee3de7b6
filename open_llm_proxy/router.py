from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Request
from fastapi.responses import Response

from open_llm_proxy.bootstrap import ProxyRuntime
from open_llm_proxy.catalog import CatalogEntry
from open_llm_proxy.errors import (
    BadRequestError,
    ModelNotFoundError,
    SourceNotFoundError,
)
from open_llm_proxy.gateway.proxy import (
    UpstreamForwarder,
    build_upstream_headers,
    build_upstream_url,
)
from open_llm_proxy.sources import ProviderSource

logger = logging.getLogger("uvicorn.error")


class RequestRouter:
    """Resolves the requested model and forwards to the owning source."""

    def __init__(self, runtime: ProxyRuntime, forwarder: UpstreamForwarder) -> None:
        self.runtime = runtime
        self.forwarder = forwarder

    def models_response(self) -> dict[str, Any]:
        return {"object": "list", "data": self.runtime.catalog.list_models()}

    def resolve(self, model_id: str) -> tuple[CatalogEntry, ProviderSource]:
        entry = self.runtime.catalog.resolve(model_id)
        if entry is None:
            raise ModelNotFoundError(f"Model '{model_id}' not found.")
        source = self.runtime.registry.lookup(entry.source_key)
        if source is None:
            logger.error(
                "proxy_source_missing model=%s source=%s", model_id, entry.source_key
            )
            raise SourceNotFoundError(
                f"Internal error: no source configured for model '{model_id}'."
            )
        return entry, source

    async def forward(self, request: Request) -> Response:
        payload = await _read_json_payload(request)
        requested_model = payload.get("model")
        if not isinstance(requested_model, str) or not requested_model:
            raise BadRequestError("Request body is missing the 'model' field.")

        entry, source = self.resolve(requested_model)
        upstream_url = build_upstream_url(source.base_url, request.url.path)
        headers = build_upstream_headers(request.headers, source.api_key)
        upstream_payload = {**payload, "model": entry.upstream_model_id}

        logger.info(
            "proxy_forward method=%s path=%s model=%s upstream_model=%s source=%s",
            request.method,
            request.url.path,
            requested_model,
            entry.upstream_model_id,
            source.key,
        )
        return await self.forwarder.forward(
            method=request.method,
            url=upstream_url,
            headers=headers,
            payload=upstream_payload,
            stream=payload.get("stream") is True,
        )


async def _read_json_payload(request: Request) -> dict[str, Any]:
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise BadRequestError("Invalid request body: could not parse JSON.") from exc

    if not isinstance(payload, dict):
        raise BadRequestError("Expected a JSON object request body.")
    return payload
