from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

from open_llm_proxy import main as main_module
from open_llm_proxy.main import app
from open_llm_proxy.settings import get_settings

TEST_PROXY_CONFIG_PATH = Path(__file__).resolve().parent / "fixtures" / "proxy.yaml"
ALPHA_BASE_URL = "https://api.alpha.test/v1"
BETA_BASE_URL = "https://text.beta.test/openai"
PROXY_SECRET = "secret123"

ForwardHandler = Callable[[httpx.Request], httpx.Response]


def _default_forward_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"id": "chatcmpl-1", "object": "chat.completion", "choices": []},
        headers={"x-upstream-host": request.url.host},
    )


class _UnreadByteStream(httpx.AsyncByteStream, httpx.SyncByteStream):
    """Body stream that has not been consumed yet, like a real upstream's."""

    def __init__(self, body: bytes) -> None:
        self._body = body

    def __iter__(self):  # type: ignore[override]
        yield self._body

    async def __aiter__(self):  # type: ignore[override]
        yield self._body


def _as_unread_stream(response: httpx.Response) -> httpx.Response:
    # httpx.Response(json=/content=) reads its body eagerly, which would make
    # the forwarder's aiter_raw() raise StreamConsumed.
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=_UnreadByteStream(response.content),
    )


class FakeUpstream:
    """MockTransport handler standing in for every upstream provider.

    ``models_by_host`` maps a hostname to the ``data`` list its ``/models``
    endpoint returns; hosts mapped to ``None`` (or missing) answer 503.
    """

    def __init__(
        self,
        models_by_host: dict[str, list[dict[str, Any]] | None] | None = None,
        forward_handler: ForwardHandler | None = None,
    ) -> None:
        self.models_by_host = models_by_host or {}
        self.forward_handler = forward_handler or _default_forward_handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/models"):
            models = self.models_by_host.get(request.url.host)
            if models is None:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"object": "list", "data": models})
        return _as_unread_stream(self.forward_handler(request))

    def discovery_requests(self, host: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.path.endswith("/models")
            and (host is None or request.url.host == host)
        ]

    def forwarded_requests(self) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if not request.url.path.endswith("/models")
        ]

    @staticmethod
    def body_of(request: httpx.Request) -> dict[str, Any]:
        return json.loads(request.content)


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("PROXY_CONFIG_PATH", str(TEST_PROXY_CONFIG_PATH))
    monkeypatch.setenv("PROXY_AUTH_KEY", PROXY_SECRET)
    monkeypatch.setenv("DISCOVERY_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("PROXY_EAGER_BOOTSTRAP", "false")
    monkeypatch.setenv("ALPHA", "alpha-key")
    monkeypatch.setenv("BETA", "beta-key")


def build_test_client(
    monkeypatch: Any, upstream: FakeUpstream | None = None, **env: Any
) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, str(value))

    handler = upstream or FakeUpstream()
    monkeypatch.setattr(
        main_module,
        "_build_http_client",
        lambda _settings: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    get_settings.cache_clear()
    return TestClient(app)


def auth_headers(token: str = PROXY_SECRET) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
