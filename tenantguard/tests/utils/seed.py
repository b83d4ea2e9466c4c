from __future__ import annotations

from typing import Any

from sqlalchemy import func, select

from tenantguard.domain.models import AuditEvent, Base, Tenant
from tenantguard.persistence.db import SessionLocal


def tenant(tenant_id: str, *, slug: str | None = None, status: str = "active") -> Tenant:
    return Tenant(id=tenant_id, name=f"Tenant {tenant_id}", slug=slug or tenant_id, status=status)


async def seed(*rows: Base) -> None:
    # Insert fixture rows in one commit; the unit of work orders them by foreign key.
    async with SessionLocal() as session:
        session.add_all(rows)
        await session.commit()


async def tenant_id_of(model: Any, row_id: str) -> str | None:
    async with SessionLocal() as session:
        result = await session.execute(select(model.tenant_id).where(model.id == row_id))
        return result.scalar_one()


async def snapshot(*models: Any) -> dict[str, list[tuple[Any, ...]]]:
    # Capture (id, tenant_id) pairs so tests can assert nothing changed.
    state: dict[str, list[tuple[Any, ...]]] = {}
    async with SessionLocal() as session:
        for model in models:
            rows = await session.execute(select(model.id, model.tenant_id).order_by(model.id))
            state[model.__tablename__] = [tuple(row) for row in rows.all()]
    return state


async def count_events(*, event_type: str | None = None) -> int:
    async with SessionLocal() as session:
        stmt = select(func.count()).select_from(AuditEvent)
        if event_type:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        return int((await session.execute(stmt)).scalar_one())


def principal_headers(
    *,
    user_id: str = "u-caller",
    tenant_id: str | None = None,
    role: str = "employee",
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    headers = {"X-User-Id": user_id, "X-Role": role}
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    headers.update(extra or {})
    return headers


def super_user_headers(extra: dict[str, str] | None = None) -> dict[str, str]:
    return principal_headers(user_id="u-operator", role="super_user", extra=extra)
