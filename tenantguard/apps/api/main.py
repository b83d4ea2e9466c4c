from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantguard_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.response import API_VERSION
from tenantguard.apps.api.routes.projects import router as projects_router
from tenantguard.apps.api.routes.super_debug import router as super_debug_router
from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantGuardError
from tenantguard.core.logging import configure_logging


_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    f"/{API_VERSION}",
    "/docs",
    "/openapi.json",
    "/redoc",
)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="tenantguard API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        # Unversioned super-debug aliases are kept for old operator scripts only.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantGuardError)
    async def _tenantguard_exception_handler(request: Request, exc: TenantGuardError):
        return await tenantguard_exception_handler(request, exc)

    app.include_router(projects_router, prefix=f"/{API_VERSION}")
    app.include_router(super_debug_router, prefix=f"/{API_VERSION}")
    # Legacy unversioned alias for the operator console.
    app.include_router(super_debug_router, include_in_schema=False)

    @app.get(f"/{API_VERSION}/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
