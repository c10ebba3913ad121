from __future__ import annotations

from typing import Any

from accessvault.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="VALIDATION_FAILED", message="support_email must be a valid email address"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Unauthorized"),
    404: _response("Not found", code="NOT_FOUND", message="Device not found"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response(
        "Upstream provider error",
        code="PROVIDER_ERROR",
        message="tailscale API error 500: upstream unavailable",
        details={"provider": "tailscale", "status_code": 500},
    ),
    503: _response("Service unavailable", code="PROVIDER_NOT_CONFIGURED", message="ZITADEL_DOMAIN is required"),
}
