from __future__ import annotations

from typing import Any

import pytest

from open_llm_proxy.errors import AuthenticationError, ProxyConfigurationError
from open_llm_proxy.gateway.auth import ProxyAuthenticator
from open_llm_proxy.settings import Settings
from tests.client_test_utils import (
    ALPHA_BASE_URL,
    FakeUpstream,
    auth_headers,
    build_test_client,
)


def _upstream() -> FakeUpstream:
    return FakeUpstream({"api.alpha.test": [{"id": "m-alpha"}]})


def test_verify_accepts_matching_bearer_token() -> None:
    authenticator = ProxyAuthenticator(Settings(proxy_auth_key="secret123"))
    result = authenticator.verify("Bearer secret123")
    assert result.method == "proxy_key"


def test_verify_trims_token_whitespace() -> None:
    authenticator = ProxyAuthenticator(Settings(proxy_auth_key="secret123"))
    assert authenticator.verify("Bearer  secret123 ").method == "proxy_key"


@pytest.mark.parametrize(
    "header",
    [None, "", "secret123", "Basic secret123", "bearer secret123", "Bearer wrong"],
)
def test_verify_rejects_missing_or_invalid_tokens(header: str | None) -> None:
    authenticator = ProxyAuthenticator(Settings(proxy_auth_key="secret123"))
    with pytest.raises(AuthenticationError):
        authenticator.verify(header)


def test_verify_fails_closed_without_proxy_secret() -> None:
    authenticator = ProxyAuthenticator(Settings(proxy_auth_key=None))
    with pytest.raises(ProxyConfigurationError):
        authenticator.verify("Bearer anything")


def test_blank_proxy_secret_counts_as_unconfigured() -> None:
    authenticator = ProxyAuthenticator(Settings(proxy_auth_key="   "))
    with pytest.raises(ProxyConfigurationError):
        authenticator.verify("Bearer    ")


def test_wrong_token_is_rejected_with_401(monkeypatch: Any) -> None:
    upstream = _upstream()
    with build_test_client(monkeypatch, upstream) as client:
        response = client.get("/v1/models", headers=auth_headers("wrong"))

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.json()["error"]["type"] == "authentication_error"
    assert upstream.requests == []


def test_missing_authorization_header_is_rejected(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, _upstream()) as client:
        response = client.post(
            "/v1/chat/completions", json={"model": "m-alpha", "messages": []}
        )

    assert response.status_code == 401


def test_unknown_paths_still_require_authentication(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, _upstream()) as client:
        response = client.get("/dashboard", follow_redirects=False)

    assert response.status_code == 401


def test_missing_proxy_secret_fails_every_request(monkeypatch: Any) -> None:
    upstream = _upstream()
    with build_test_client(monkeypatch, upstream, PROXY_AUTH_KEY=None) as client:
        response = client.get("/v1/models", headers=auth_headers())

    assert response.status_code == 500
    assert response.json()["error"]["type"] == "configuration_error"
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert upstream.requests == []


def test_valid_token_reaches_forwarding(monkeypatch: Any) -> None:
    upstream = _upstream()
    with build_test_client(monkeypatch, upstream) as client:
        response = client.post(
            "/v1/chat/completions",
            json={"model": "m-alpha", "messages": []},
            headers=auth_headers(),
        )

    assert response.status_code == 200
    forwarded = upstream.forwarded_requests()
    assert len(forwarded) == 1
    assert str(forwarded[0].url) == f"{ALPHA_BASE_URL}/chat/completions"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
def test_preflight_bypasses_authentication(
    monkeypatch: Any, headers: dict[str, str]
) -> None:
    upstream = _upstream()
    with build_test_client(monkeypatch, upstream, PROXY_AUTH_KEY=None) as client:
        response = client.options("/v1/chat/completions", headers=headers)

    assert response.status_code == 204
    assert response.content == b""
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
    assert (
        response.headers["Access-Control-Allow-Headers"]
        == "Content-Type, Authorization"
    )
    assert response.headers["Access-Control-Max-Age"] == "86400"
    assert upstream.requests == []
