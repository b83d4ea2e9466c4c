from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import ROLE_ADMIN, ROLE_CLIENT, ROLE_EMPLOYEE, ROLE_SUPER_USER
from tenantguard.persistence.db import get_session
from tenantguard.services.audit import get_request_context, record_event
from tenantguard.services.guarded_actions import AuditActor
from tenantguard.services.tenancy.enforcement import TenancyPolicy, effective_tenant_id


_KNOWN_ROLES = {ROLE_SUPER_USER, ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_CLIENT}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request, closed on success and on error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity populated by the upstream auth layer and forwarded as headers.
    user_id: str
    tenant_id: str | None
    role: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _auth_error("X-User-Id header is required")
    role = (request.headers.get("X-Role") or ROLE_EMPLOYEE).strip().lower()
    if role not in _KNOWN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unknown role: {role}"},
        )
    tenant_id = request.headers.get("X-Tenant-Id") or None
    return Principal(user_id=user_id, tenant_id=tenant_id, role=role)


def require_role(*roles: str):
    # Dependency factory enforcing an allow-list of roles at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if principal.role in roles:
            return principal
        request_ctx = get_request_context(request)
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_type="user",
            actor_id=principal.user_id,
            actor_role=principal.role,
            event_type="rbac.forbidden",
            outcome="failure",
            resource_type="rbac",
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            metadata={"path": request.url.path, "method": request.method, "required_roles": list(roles)},
            error_code="AUTH_FORBIDDEN",
            commit=True,
            best_effort=True,
        )
        raise _forbidden_error("Insufficient role for this operation")

    return _dependency


require_super_user = require_role(ROLE_SUPER_USER)


def get_tenancy_policy(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> TenancyPolicy:
    # Resolve the enforcement mode once per request; handlers thread this object through.
    return TenancyPolicy.from_settings(
        effective_tenant_id=effective_tenant_id(principal),
        route=request.url.path,
        method=request.method,
    )


def audit_actor(request: Request, principal: Principal) -> AuditActor:
    request_ctx = get_request_context(request)
    return AuditActor(
        actor_id=principal.user_id,
        actor_role=principal.role,
        tenant_id=principal.tenant_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
