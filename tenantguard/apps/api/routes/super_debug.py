from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import Principal, audit_actor, get_db, require_super_user
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.core.config import get_settings
from tenantguard.services.guarded_actions import (
    CACHE_INVALIDATE,
    TENANT_HEALTH_RECOMPUTE,
    confirmation_phrases,
    run_guarded,
)
from tenantguard.services.tenancy import warning_tracker
from tenantguard.services.tenancy.backfill import execute_backfill, scan_missing_tenant_ids
from tenantguard.services.tenancy.enforcement import get_enforcement_mode
from tenantguard.services.tenancy.health import (
    get_tenant_health,
    invalidate_caches,
    recompute_tenant_health,
)
from tenantguard.services.tenancy.integrity import run_integrity_checks
from tenantguard.services.tenancy.quarantine import (
    QuarantineAssignment,
    archive_quarantined,
    assign_quarantined,
    delete_quarantined,
    list_quarantined,
    quarantine_summary,
)


router = APIRouter(prefix="/super/debug", tags=["super-debug"], responses=DEFAULT_ERROR_RESPONSES)

_DictEnvelope = SuccessEnvelope[dict[str, Any]] | dict[str, Any]


class TenantHealthRecomputeRequest(BaseModel):
    # Omit tenant_id to refresh every tenant except the quarantine sink.
    tenant_id: str | None = None


class QuarantineAssignTarget(BaseModel):
    tenant_id: str
    workspace_id: str | None = None
    project_id: str | None = None
    client_id: str | None = None


class QuarantineAssignRequest(BaseModel):
    table: str
    id: str
    assign_to: QuarantineAssignTarget


class QuarantineRowRequest(BaseModel):
    table: str
    id: str


class QuarantineDeleteRequest(QuarantineRowRequest):
    # Must repeat the X-Confirm-Delete token.
    confirm_phrase: str | None = None


@router.get("/tenantid/scan", response_model=_DictEnvelope)
async def tenantid_scan(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    scan = await scan_missing_tenant_ids(db)
    return success_response(request=request, data=scan.to_dict())


@router.post("/tenantid/backfill", response_model=_DictEnvelope)
async def tenantid_backfill(
    request: Request,
    mode: str = Query(default="dry_run"),
    confirm: str | None = Header(default=None, alias="X-Confirm-Backfill"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    # Mode is validated by the engine so a bad value is a 400, not a 422.
    result = await execute_backfill(
        db,
        mode=mode,
        confirm=confirm,
        actor=audit_actor(request, principal),
    )
    return success_response(request=request, data=result.to_dict())


@router.get("/integrity/checks", response_model=_DictEnvelope)
async def integrity_checks(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    report = await run_integrity_checks(db)
    return success_response(request=request, data=report.to_dict())


@router.post("/tenant-health/recompute", response_model=_DictEnvelope)
async def tenant_health_recompute(
    request: Request,
    payload: TenantHealthRecomputeRequest | None = None,
    confirm: str | None = Header(default=None, alias="X-Confirm-Action"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    tenant_id = payload.tenant_id if payload else None
    result = await run_guarded(
        db,
        TENANT_HEALTH_RECOMPUTE,
        confirm=confirm,
        actor=audit_actor(request, principal),
        operation=lambda: recompute_tenant_health(db, tenant_id),
        metadata=lambda outcome: {
            "tenant_id": tenant_id,
            "recomputed": outcome["recomputed"],
            "blocked": outcome["blocked"],
        },
        resource_type="tenant_health",
        resource_id=tenant_id,
    )
    return success_response(request=request, data=result)


@router.get("/tenant-health/{tenant_id}", response_model=_DictEnvelope)
async def tenant_health(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    summary = await get_tenant_health(db, tenant_id)
    return success_response(request=request, data=summary.to_dict())


@router.post("/cache/invalidate", response_model=_DictEnvelope)
async def cache_invalidate(
    request: Request,
    confirm: str | None = Header(default=None, alias="X-Confirm-Action"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    async def _invalidate() -> dict[str, int]:
        return invalidate_caches()

    result = await run_guarded(
        db,
        CACHE_INVALIDATE,
        confirm=confirm,
        actor=audit_actor(request, principal),
        operation=_invalidate,
        resource_type="cache",
    )
    return success_response(request=request, data={"cleared": result})


@router.get("/config", response_model=_DictEnvelope)
async def debug_config(
    request: Request,
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    settings = get_settings()
    data = {
        "tenancy_enforcement": get_enforcement_mode(settings),
        "tenancy_enforcement_raw": settings.tenancy_enforcement,
        "backfill_tenant_ids_allowed": settings.backfill_tenant_ids_allowed,
        "super_debug_actions_allowed": settings.super_debug_actions_allowed,
        "super_debug_delete_allowed": settings.super_debug_delete_allowed,
        "backfill_lock_ttl_s": settings.backfill_lock_ttl_s,
        "confirmation_phrases": confirmation_phrases(settings),
    }
    return success_response(request=request, data=data)


@router.get("/quarantine/summary", response_model=_DictEnvelope)
async def quarantine_summary_view(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    return success_response(request=request, data=await quarantine_summary(db))


@router.get("/quarantine/list", response_model=_DictEnvelope)
async def quarantine_list(
    request: Request,
    table: str = Query(default="projects"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    q: str | None = Query(default=None, max_length=200),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    data = await list_quarantined(db, table=table, page=page, limit=limit, q=q)
    return success_response(request=request, data=data)


@router.post("/quarantine/assign", response_model=_DictEnvelope)
async def quarantine_assign(
    payload: QuarantineAssignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    data = await assign_quarantined(
        db,
        table=payload.table,
        row_id=payload.id,
        assignment=QuarantineAssignment(**payload.assign_to.model_dump()),
        actor=audit_actor(request, principal),
    )
    return success_response(request=request, data=data)


@router.post("/quarantine/archive", response_model=_DictEnvelope)
async def quarantine_archive(
    payload: QuarantineRowRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    data = await archive_quarantined(
        db,
        table=payload.table,
        row_id=payload.id,
        actor=audit_actor(request, principal),
    )
    return success_response(request=request, data=data)


@router.post("/quarantine/delete", response_model=_DictEnvelope)
async def quarantine_delete(
    payload: QuarantineDeleteRequest,
    request: Request,
    confirm: str | None = Header(default=None, alias="X-Confirm-Delete"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    data = await delete_quarantined(
        db,
        table=payload.table,
        row_id=payload.id,
        confirm=confirm,
        confirm_phrase=payload.confirm_phrase,
        actor=audit_actor(request, principal),
    )
    return success_response(request=request, data=data)


@router.get("/tenancy/warnings", response_model=_DictEnvelope)
async def tenancy_warnings(
    request: Request,
    window_s: int | None = Query(default=None, ge=1),
    recent_limit: int = Query(default=20, ge=0, le=200),
    principal: Principal = Depends(require_super_user),
) -> dict[str, Any]:
    stats = warning_tracker.warning_stats(window_s=window_s, recent_limit=recent_limit)
    return success_response(request=request, data=stats)
