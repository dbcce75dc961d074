from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from renewsync.apps.api.response import error_response, is_versioned_request
from renewsync.core.errors import (
    AutomationError,
    ConcurrencyConflictError,
    DatabaseError,
    IntegrationUnavailableError,
    PanelConfigError,
    PartnerApiError,
    RenewSyncError,
    StaleSnapshotError,
    SystemNotFoundError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

# Checked in order, subclasses before their bases.
_DOMAIN_ERRORS: tuple[tuple[type[RenewSyncError], int, str], ...] = (
    (SystemNotFoundError, 404, "SYSTEM_NOT_FOUND"),
    (ConcurrencyConflictError, 409, "CONCURRENCY_CONFLICT"),
    (StaleSnapshotError, 409, "STALE_SNAPSHOT"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (PartnerApiError, 502, "PARTNER_API_ERROR"),
    (PanelConfigError, 503, "PANEL_CONFIG_ERROR"),
    (DatabaseError, 503, "DATABASE_ERROR"),
)


def domain_error_status(exc: RenewSyncError) -> tuple[int, str]:
    """Return the HTTP status and envelope code for a domain error."""
    if isinstance(exc, AutomationError):
        return 500, exc.code
    return next(
        ((status, code) for error_type, status, code in _DOMAIN_ERRORS if isinstance(exc, error_type)),
        (500, "INTERNAL_ERROR"),
    )


def http_error(exc: RenewSyncError) -> HTTPException:
    status_code, code = domain_error_status(exc)
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})


def _envelope_parts(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code", "message", ...extra}); extras become details.
    fallback = _STATUS_CODES.get(status_code, "INTERNAL_ERROR" if status_code >= 500 else "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return fallback, detail, None
    if not isinstance(detail, dict):
        return fallback, "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers fastapi.HTTPException too, which subclasses Starlette's.
    if not is_versioned_request(request):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _envelope_parts(exc.detail, exc.status_code)
    return JSONResponse(
        error_response(request=request, code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if not is_versioned_request(request):
        return JSONResponse({"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(payload, status_code=422)


async def _on_domain_error(request: Request, exc: RenewSyncError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    if status_code >= 500:
        logger.warning("request_domain_error code=%s path=%s", code, request.url.path, exc_info=exc)
    return JSONResponse(error_response(request=request, code=code, message=str(exc)), status_code=status_code)


async def _on_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    # The traceback goes to the log only.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse({"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(payload, status_code=500)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _on_http_error)
    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(RenewSyncError, _on_domain_error)
    app.add_exception_handler(Exception, _on_unhandled_error)
