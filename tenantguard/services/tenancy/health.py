from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import QUARANTINE_TENANT_SLUG
from tenantguard.core.errors import TenantNotFoundError
from tenantguard.domain.models import (
    TENANT_STATUS_ACTIVE,
    Client,
    Project,
    Task,
    Team,
    Tenant,
    User,
    Workspace,
)
from tenantguard.persistence.repos.tenants import clear_quarantine_cache, get_tenant


logger = logging.getLogger(__name__)

_ENTITY_MODELS: dict[str, Any] = {
    "users": User,
    "workspaces": Workspace,
    "clients": Client,
    "projects": Project,
    "tasks": Task,
    "teams": Team,
}

# Process-local cache of computed summaries keyed by tenant id.
_health_cache: dict[str, "TenantHealthSummary"] = {}


@dataclass(frozen=True)
class TenantHealthSummary:
    tenant_id: str
    tenant_name: str
    status: str
    is_ready: bool
    blocker_count: int
    entity_counts: dict[str, int]
    mismatches: dict[str, int]
    primary_workspaces: int
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "status": self.status,
            "is_ready": self.is_ready,
            "blocker_count": self.blocker_count,
            "entity_counts": dict(self.entity_counts),
            "mismatches": dict(self.mismatches),
            "primary_workspaces": self.primary_workspaces,
            "computed_at": self.computed_at.isoformat(),
        }


async def _scalar_count(session: AsyncSession, stmt: Any) -> int:
    return int((await session.execute(stmt)).scalar_one())


async def _mismatch_counts(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    # Rows owned by this tenant whose parent belongs to some other tenant.
    return {
        "task_project": await _scalar_count(
            session,
            select(func.count())
            .select_from(Task)
            .join(Project, Project.id == Task.project_id)
            .where(
                Task.tenant_id == tenant_id,
                Project.tenant_id.is_not(None),
                Project.tenant_id != tenant_id,
            ),
        ),
        "project_client": await _scalar_count(
            session,
            select(func.count())
            .select_from(Project)
            .join(Client, Client.id == Project.client_id)
            .where(
                Project.tenant_id == tenant_id,
                Client.tenant_id.is_not(None),
                Client.tenant_id != tenant_id,
            ),
        ),
        "team_workspace": await _scalar_count(
            session,
            select(func.count())
            .select_from(Team)
            .join(Workspace, Workspace.id == Team.workspace_id)
            .where(
                Team.tenant_id == tenant_id,
                Workspace.tenant_id.is_not(None),
                Workspace.tenant_id != tenant_id,
            ),
        ),
    }


async def compute_tenant_health(session: AsyncSession, tenant: Tenant) -> TenantHealthSummary:
    entity_counts = {
        name: await _scalar_count(
            session, select(func.count()).select_from(model).where(model.tenant_id == tenant.id)
        )
        for name, model in _ENTITY_MODELS.items()
    }
    mismatches = await _mismatch_counts(session, tenant.id)
    primary_workspaces = await _scalar_count(
        session,
        select(func.count())
        .select_from(Workspace)
        .where(Workspace.tenant_id == tenant.id, Workspace.is_primary.is_(True)),
    )
    blocker_count = sum(mismatches.values())
    return TenantHealthSummary(
        tenant_id=tenant.id,
        tenant_name=tenant.name,
        status=tenant.status,
        is_ready=blocker_count == 0 and tenant.status == TENANT_STATUS_ACTIVE,
        blocker_count=blocker_count,
        entity_counts=entity_counts,
        mismatches=mismatches,
        primary_workspaces=primary_workspaces,
    )


async def get_tenant_health(session: AsyncSession, tenant_id: str) -> TenantHealthSummary:
    cached = _health_cache.get(tenant_id)
    if cached is not None:
        return cached
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    summary = await compute_tenant_health(session, tenant)
    _health_cache[tenant_id] = summary
    return summary


async def recompute_tenant_health(session: AsyncSession, tenant_id: str | None = None) -> dict[str, Any]:
    """Refresh cached summaries for one tenant, or for every non-quarantine tenant."""
    if tenant_id:
        tenant = await get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        tenants = [tenant]
    else:
        tenants = list(
            (
                await session.execute(
                    select(Tenant).where(Tenant.slug != QUARANTINE_TENANT_SLUG).order_by(Tenant.id)
                )
            ).scalars().all()
        )

    summaries = []
    for tenant in tenants:
        summary = await compute_tenant_health(session, tenant)
        _health_cache[tenant.id] = summary
        summaries.append(summary)
    logger.info("tenant_health_recomputed tenants=%s", len(summaries))
    return {
        "recomputed": len(summaries),
        "ready": sum(1 for summary in summaries if summary.is_ready),
        "blocked": sum(1 for summary in summaries if summary.blocker_count > 0),
        "tenants": [summary.to_dict() for summary in summaries],
    }


def invalidate_caches() -> dict[str, int]:
    cleared = {
        "tenant_health": len(_health_cache),
        "quarantine_tenant": clear_quarantine_cache(),
    }
    _health_cache.clear()
    logger.info(
        "tenancy_caches_invalidated tenant_health=%s quarantine_tenant=%s",
        cleared["tenant_health"],
        cleared["quarantine_tenant"],
    )
    return cleared
