from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from accessvault.apps.api.response import error_response, is_versioned_request
from accessvault.core.errors import (
    AccessVaultError,
    EnrollmentTokenExpiredError,
    EnrollmentTokenInvalidError,
    InputValidationError,
    IntegrationNotFoundError,
    NotFoundError,
    PermissionDeniedError,
    PollTimeoutError,
    ProviderAPIError,
    ProviderConfigError,
    SecretExpiredError,
    SessionTokenError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most-specific first; the first isinstance match wins.
_DOMAIN_ERROR_MAP: tuple[tuple[type[AccessVaultError], int, str], ...] = (
    (EnrollmentTokenExpiredError, 400, "TOKEN_EXPIRED"),
    (EnrollmentTokenInvalidError, 400, "TOKEN_INVALID"),
    (InputValidationError, 400, "VALIDATION_FAILED"),
    (SecretExpiredError, 400, "SECRET_EXPIRED"),
    (SessionTokenError, 401, "SESSION_TOKEN_INVALID"),
    (PermissionDeniedError, 403, "AUTH_FORBIDDEN"),
    (IntegrationNotFoundError, 404, "INTEGRATION_NOT_FOUND"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ProviderAPIError, 502, "PROVIDER_ERROR"),
    (PollTimeoutError, 504, "POLL_TIMEOUT"),
    (ProviderConfigError, 503, "PROVIDER_NOT_CONFIGURED"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def map_domain_error(exc: AccessVaultError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERROR_MAP:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI HTTPException too, including router 404/405s.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: AccessVaultError) -> JSONResponse:
    status_code, code = map_domain_error(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, ProviderAPIError):
        # Surface which upstream failed; the raw body stays in the message.
        details = {"provider": exc.provider, "status_code": exc.status_code}
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": str(exc)}, status_code=status_code)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
