from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from open_llm_proxy.errors import AuthenticationError, ProxyConfigurationError
from open_llm_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")

BEARER_PREFIX = "Bearer "


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class ProxyAuthenticator:
    """Checks the inbound bearer token against the shared proxy secret.

    Fails closed: without a configured secret every request is rejected.
    """

    def __init__(self, settings: Settings):
        self.proxy_auth_key = (
            settings.proxy_auth_key if settings.proxy_auth_is_configured else None
        )

    def verify(self, authorization: str | None) -> AuthResult:
        if self.proxy_auth_key is None:
            logger.error("proxy_auth_misconfigured env=PROXY_AUTH_KEY")
            raise ProxyConfigurationError("Proxy service is misconfigured.")

        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise AuthenticationError(
                "Missing 'Authorization: Bearer <proxy_key>' header."
            )

        token = authorization[len(BEARER_PREFIX) :].strip()
        if not secrets.compare_digest(
            token.encode("utf-8"), self.proxy_auth_key.encode("utf-8")
        ):
            raise AuthenticationError("Proxy authentication failed.")

        return AuthResult(method="proxy_key", principal="proxy-key-client")

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        try:
            self.verify(request.headers.get("authorization"))
        except (AuthenticationError, ProxyConfigurationError) as exc:
            return exc.to_response()
        return None
