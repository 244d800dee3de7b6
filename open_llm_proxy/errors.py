from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class ProxyError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "server_error"
    code: str | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> JSONResponse:
        return error_response(
            status_code=self.status_code,
            message=self.message,
            error_type=self.error_type,
            code=self.code,
        )


class ProxyConfigurationError(ProxyError):
    error_type = "configuration_error"
    code = "proxy_misconfigured"


class AuthenticationError(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"
    code = "invalid_api_key"

    def to_response(self) -> JSONResponse:
        response = super().to_response()
        response.headers["WWW-Authenticate"] = "Bearer"
        return response


class BadRequestError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class ModelNotFoundError(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "invalid_request_error"
    code = "model_not_found"


class SourceNotFoundError(ProxyError):
    error_type = "server_error"
    code = "source_not_found"


class UpstreamForwardError(ProxyError):
    error_type = "upstream_connection_error"
    code = "upstream_unreachable"


class DiscoveryError(RuntimeError):
    """A single failed model-listing attempt. Never leaves discovery."""


class BootstrapError(RuntimeError):
    """Raised to each caller of a failed bootstrap, chained to the cause."""


def error_response(
    *,
    status_code: int,
    message: str,
    error_type: str,
    code: str | None = None,
    param: Any = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "type": error_type,
                "param": param,
                "code": code,
            },
        },
    )
