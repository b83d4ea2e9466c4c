from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import error_response, is_versioned_request
from tenantguard.core.errors import (
    BackfillInProgressError,
    ConfirmationRequiredError,
    GateDisabledError,
    InvalidBackfillModeError,
    QuarantineError,
    TenantGuardError,
    TenantNotFoundError,
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
}

# Domain errors and the status/code pair each one surfaces as.
_DOMAIN_ERRORS: list[tuple[type[TenantGuardError], int, str]] = [
    (GateDisabledError, 403, "ACTION_DISABLED"),
    (ConfirmationRequiredError, 400, "CONFIRMATION_REQUIRED"),
    (InvalidBackfillModeError, 400, "INVALID_MODE"),
    (BackfillInProgressError, 409, "BACKFILL_IN_PROGRESS"),
    (TenantNotFoundError, 404, "TENANT_NOT_FOUND"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details are either {"code", "message", ...} dicts or plain strings.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if not is_versioned_request(request):
        legacy: dict[str, Any] = {"code": code, "message": message}
        if details:
            legacy.update(details)
        return JSONResponse(content={"detail": legacy}, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def domain_error_status(exc: TenantGuardError) -> tuple[int, str, dict[str, Any] | None]:
    if isinstance(exc, QuarantineError):
        return exc.status_code, exc.code, None
    if isinstance(exc, ConfirmationRequiredError):
        return 400, "CONFIRMATION_REQUIRED", {"header": exc.header}
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code, None
    return 400, "BAD_REQUEST", None


async def tenantguard_exception_handler(request: Request, exc: TenantGuardError) -> JSONResponse:
    status_code, code, details = domain_error_status(exc)
    logger.info("request_rejected code=%s path=%s", code, request.url.path)
    return _render(request, status_code=status_code, code=code, message=str(exc), details=details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405s arrive as Starlette exceptions, not FastAPI ones.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


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


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
