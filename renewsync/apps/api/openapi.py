from __future__ import annotations

from typing import Any

from renewsync.apps.api.response import ErrorEnvelope


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
    404: _response("Not found", code="SYSTEM_NOT_FOUND", message="system not found: sys-1"),
    409: _response(
        "Conflict",
        code="CONCURRENCY_CONFLICT",
        message="system sys-1 has work in flight",
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response(
        "Partner API error",
        code="PARTNER_API_ERROR",
        message="partner API error: 400 GET /users/get",
    ),
    503: _response(
        "Integration unavailable",
        code="INTEGRATION_UNAVAILABLE",
        message="partner_api is temporarily unavailable",
    ),
}
