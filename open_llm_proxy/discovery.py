from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from open_llm_proxy.catalog import CatalogBuilder, CatalogEntry, ModelCatalog
from open_llm_proxy.config import FallbackModel
from open_llm_proxy.errors import DiscoveryError
from open_llm_proxy.sources import ProviderSource, SourceRegistry

logger = logging.getLogger("uvicorn.error")

Sleep = Callable[[float], Awaitable[Any]]
DiscoveryOutcome = Literal["discovered", "fallback", "empty"]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Linear backoff: attempt ``k`` waits ``base_delay_seconds * (k - 1)``."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative.")

    def delay_for(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return self.base_delay_seconds * (attempt - 1)

    def attempts(self) -> range:
        return range(1, self.max_attempts + 1)


@dataclass(slots=True)
class SourceDiscoveryResult:
    source_key: str
    outcome: DiscoveryOutcome
    attempts: int
    registered: list[str] = field(default_factory=list)
    shadowed: list[str] = field(default_factory=list)
    last_error: str | None = None


@dataclass(slots=True)
class DiscoveryReport:
    catalog: ModelCatalog
    sources: list[SourceDiscoveryResult]

    def for_source(self, source_key: str) -> SourceDiscoveryResult | None:
        for result in self.sources:
            if result.source_key == source_key:
                return result
        return None


class ModelDiscovery:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def discover(
        self,
        registry: SourceRegistry,
        fallback_models: Iterable[FallbackModel] = (),
    ) -> DiscoveryReport:
        """Query every source in registration order and build the catalog.

        Sources are processed one at a time. Failures are absorbed per source:
        after the retry budget is spent the configured fallback models for
        that source are registered instead, if any.
        """
        fallbacks = list(fallback_models)
        builder = CatalogBuilder()
        results: list[SourceDiscoveryResult] = []

        for source in registry:
            models, attempts, last_error = await self.fetch_models(source)
            if models is not None:
                result = SourceDiscoveryResult(
                    source_key=source.key,
                    outcome="discovered",
                    attempts=attempts,
                )
                self._register_live_models(builder, source, models, result)
                logger.info(
                    (
                        "discovery_source_loaded source=%s attempts=%d "
                        "registered=%d shadowed=%d"
                    ),
                    source.key,
                    attempts,
                    len(result.registered),
                    len(result.shadowed),
                )
            else:
                result = SourceDiscoveryResult(
                    source_key=source.key,
                    outcome="empty",
                    attempts=attempts,
                    last_error=last_error,
                )
                self._register_fallbacks(builder, source, fallbacks, result)
                if result.registered or result.shadowed:
                    result.outcome = "fallback"
                logger.warning(
                    (
                        "discovery_source_%s source=%s attempts=%d "
                        "registered=%d error=%s"
                    ),
                    result.outcome,
                    source.key,
                    attempts,
                    len(result.registered),
                    last_error,
                )
            results.append(result)

        catalog = builder.build()
        logger.info(
            "discovery_complete sources=%d models=%d", len(results), len(catalog)
        )
        return DiscoveryReport(catalog=catalog, sources=results)

    async def fetch_models(
        self, source: ProviderSource
    ) -> tuple[list[Any] | None, int, str | None]:
        """Return ``(models, attempts_used, last_error)``.

        ``models`` is ``None`` when every attempt failed.
        """
        last_error: str | None = None
        attempt = 0
        for attempt in self._retry_policy.attempts():
            delay = self._retry_policy.delay_for(attempt)
            if delay > 0:
                await self._sleep(delay)
            try:
                return await self._fetch_once(source), attempt, None
            except DiscoveryError as exc:
                last_error = str(exc)
                logger.warning(
                    "discovery_attempt_failed source=%s attempt=%d/%d error=%s",
                    source.key,
                    attempt,
                    self._retry_policy.max_attempts,
                    last_error,
                )
        return None, attempt, last_error

    async def _fetch_once(self, source: ProviderSource) -> list[Any]:
        url = f"{source.base_url.rstrip('/')}/models"
        try:
            response = await self._client.get(
                url,
                headers={
                    "Authorization": f"Bearer {source.api_key}",
                    "Content-Type": "application/json",
                },
                follow_redirects=True,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DiscoveryError(f"{exc.__class__.__name__}: {exc}") from exc

        if not response.is_success:
            raise DiscoveryError(f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise DiscoveryError("Response body is not valid JSON.") from exc

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list) or not data:
            raise DiscoveryError("Response has no non-empty 'data' list.")
        return data

    @staticmethod
    def _register_live_models(
        builder: CatalogBuilder,
        source: ProviderSource,
        models: list[Any],
        result: SourceDiscoveryResult,
    ) -> None:
        for item in models:
            if not isinstance(item, dict):
                continue
            model_id = item.get("id")
            if not isinstance(model_id, str) or not model_id:
                continue
            object_type = item.get("object")
            owned_by = item.get("owned_by")
            entry = CatalogEntry(
                model_id=model_id,
                source_key=source.key,
                upstream_model_id=model_id,
                object=(
                    object_type
                    if isinstance(object_type, str) and object_type
                    else "model"
                ),
                owned_by=(
                    owned_by
                    if isinstance(owned_by, str) and owned_by
                    else source.hostname
                ),
            )
            if builder.register(entry):
                result.registered.append(model_id)
            else:
                result.shadowed.append(model_id)

    @staticmethod
    def _register_fallbacks(
        builder: CatalogBuilder,
        source: ProviderSource,
        fallbacks: list[FallbackModel],
        result: SourceDiscoveryResult,
    ) -> None:
        for fallback in fallbacks:
            if fallback.source != source.key:
                continue
            entry = CatalogEntry(
                model_id=fallback.id,
                source_key=source.key,
                upstream_model_id=fallback.id,
                object="model",
                owned_by=source.hostname,
            )
            if builder.register(entry):
                result.registered.append(fallback.id)
            else:
                result.shadowed.append(fallback.id)
