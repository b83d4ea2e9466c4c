from __future__ import annotations

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import Project, Task
from tenantguard.persistence.guards import foreign_predicate, legacy_predicate, tenant_predicate


async def get_project_scoped(session: AsyncSession, *, tenant_id: str | None, project_id: str) -> Project | None:
    # Tenant-filtered lookup used as the reconciler fast path.
    result = await session.execute(
        select(Project).where(Project.id == project_id, tenant_predicate(Project, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_project_unscoped(session: AsyncSession, *, project_id: str) -> Project | None:
    # Unfiltered lookup; only used to classify a scoped miss.
    return await session.get(Project, project_id)


def _project_listing(workspace_id: str | None, limit: int | None) -> Select:
    stmt = select(Project)
    if workspace_id:
        stmt = stmt.where(Project.workspace_id == workspace_id)
    stmt = stmt.order_by(Project.created_at, Project.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


async def list_projects_scoped(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    workspace_id: str | None = None,
    limit: int | None = 200,
) -> list[Project]:
    stmt = _project_listing(workspace_id, limit).where(tenant_predicate(Project, tenant_id))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_projects_legacy(
    session: AsyncSession,
    *,
    workspace_id: str | None = None,
    limit: int | None = 200,
) -> list[Project]:
    stmt = _project_listing(workspace_id, limit).where(legacy_predicate(Project))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_projects_foreign(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    workspace_id: str | None = None,
    limit: int | None = 200,
) -> list[Project]:
    stmt = _project_listing(workspace_id, limit).where(foreign_predicate(Project, tenant_id))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_projects_unscoped(
    session: AsyncSession,
    *,
    workspace_id: str | None = None,
    limit: int | None = 200,
) -> list[Project]:
    # No tenant filter; off mode serves these rows as-is.
    result = await session.execute(_project_listing(workspace_id, limit))
    return list(result.scalars().all())


async def get_task_scoped(session: AsyncSession, *, tenant_id: str | None, task_id: str) -> Task | None:
    result = await session.execute(
        select(Task).where(Task.id == task_id, tenant_predicate(Task, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_task_unscoped(session: AsyncSession, *, task_id: str) -> Task | None:
    return await session.get(Task, task_id)
