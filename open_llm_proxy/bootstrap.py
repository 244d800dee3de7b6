from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

import httpx

from open_llm_proxy.catalog import ModelCatalog
from open_llm_proxy.config import ProxyConfig
from open_llm_proxy.discovery import ModelDiscovery, RetryPolicy
from open_llm_proxy.errors import BootstrapError
from open_llm_proxy.sources import SourceRegistry, build_source_registry

logger = logging.getLogger("uvicorn.error")


class BootstrapState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProxyRuntime:
    registry: SourceRegistry
    catalog: ModelCatalog


Initializer = Callable[[], Awaitable[ProxyRuntime]]


class ProxyBootstrap:
    """Builds the proxy runtime once per process.

    Every caller of ``ensure_ready`` shares one in-flight initialization and
    then the memoized outcome, success or failure.
    """

    def __init__(self, initializer: Initializer) -> None:
        self._initializer = initializer
        self._task: asyncio.Task[ProxyRuntime] | None = None
        self._runtime: ProxyRuntime | None = None
        self._error: BaseException | None = None
        self._state = BootstrapState.UNINITIALIZED

    @property
    def state(self) -> BootstrapState:
        return self._state

    @property
    def runtime(self) -> ProxyRuntime | None:
        return self._runtime

    def start(self) -> asyncio.Task[ProxyRuntime] | None:
        # No await between the check and the assignment: this is the
        # single-flight guard.
        if self._task is None and self._state == BootstrapState.UNINITIALIZED:
            self._state = BootstrapState.INITIALIZING
            self._task = asyncio.ensure_future(self._run())
            self._task.add_done_callback(_consume_task_exception)
        return self._task

    async def ensure_ready(self) -> ProxyRuntime:
        if self._runtime is None and self._error is None:
            task = self.start()
            assert task is not None
            # asyncio.wait neither cancels the task nor re-raises its exception.
            await asyncio.wait((task,))
            if task.cancelled():
                raise BootstrapError("Proxy initialization was cancelled.")

        if self._error is not None:
            # A fresh error per caller keeps the stored traceback from growing.
            raise BootstrapError(
                f"Proxy initialization failed: {self._error}"
            ) from self._error
        assert self._runtime is not None
        return self._runtime

    async def _run(self) -> ProxyRuntime:
        started = time.perf_counter()
        logger.info("bootstrap_started")
        try:
            runtime = await self._initializer()
        except Exception as exc:
            self._error = exc
            self._state = BootstrapState.FAILED
            logger.exception("bootstrap_failed error=%s", exc)
            raise
        self._runtime = runtime
        self._state = BootstrapState.READY
        logger.info(
            "bootstrap_complete sources=%d models=%d elapsed_ms=%.1f",
            len(runtime.registry),
            len(runtime.catalog),
            (time.perf_counter() - started) * 1000.0,
        )
        return runtime


def _consume_task_exception(task: asyncio.Task[ProxyRuntime]) -> None:
    # Failures are memoized on the bootstrap; an eager start may have no awaiter.
    if not task.cancelled():
        task.exception()


def build_proxy_initializer(
    *,
    config: ProxyConfig,
    client: httpx.AsyncClient,
    retry_policy: RetryPolicy,
    environ: Mapping[str, str] | None = None,
) -> Initializer:
    async def _initialize() -> ProxyRuntime:
        registry = build_source_registry(config.upstreams, environ)
        discovery = ModelDiscovery(client, retry_policy=retry_policy)
        report = await discovery.discover(registry, config.fallback_models)
        return ProxyRuntime(registry=registry, catalog=report.catalog)

    return _initialize
