from __future__ import annotations

from typing import Any

from tenantguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(
            code="CONFIRMATION_REQUIRED",
            message="Confirmation required. Send header X-Confirm-Backfill: APPLY_TENANTID_BACKFILL",
            details={"header": "X-Confirm-Backfill"},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-User-Id header is required"),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="ACTION_DISABLED",
            message="tenantid_backfill is not allowed. Set BACKFILL_TENANT_IDS_ALLOWED=true to enable",
        ),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    409: _response(
        "Conflict",
        _error_example(code="BACKFILL_IN_PROGRESS", message="Another tenant id backfill is already running"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

# Tenant-facing routes only add the tenancy-specific 403 on top of the defaults.
TENANT_ROUTE_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _response(
        "Forbidden",
        _error_example(code="TENANCY_FORBIDDEN", message="Resource belongs to another tenant"),
    ),
}
