from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import QUARANTINE_TENANT_NAME, QUARANTINE_TENANT_SLUG
from tenantguard.domain.models import TENANT_STATUS_INACTIVE, Tenant


logger = logging.getLogger(__name__)

# Process-local memo of the quarantine tenant id; cleared by the cache invalidate action.
_quarantine_tenant_cache: dict[str, str] = {}


def clear_quarantine_cache() -> int:
    # Drop the memoized quarantine id and report how many entries were cleared.
    cleared = len(_quarantine_tenant_cache)
    _quarantine_tenant_cache.clear()
    return cleared


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def get_quarantine_tenant_id(session: AsyncSession) -> str | None:
    # Look up the reserved sink tenant without creating it.
    cached = _quarantine_tenant_cache.get(QUARANTINE_TENANT_SLUG)
    if cached:
        return cached
    result = await session.execute(select(Tenant.id).where(Tenant.slug == QUARANTINE_TENANT_SLUG).limit(1))
    tenant_id = result.scalar_one_or_none()
    if tenant_id:
        _quarantine_tenant_cache[QUARANTINE_TENANT_SLUG] = tenant_id
    return tenant_id


async def get_or_create_quarantine_tenant_id(session: AsyncSession) -> str:
    # Create the quarantine tenant lazily; the unique slug settles concurrent creators.
    existing = await get_quarantine_tenant_id(session)
    if existing:
        return existing
    tenant = Tenant(
        id=uuid4().hex,
        name=QUARANTINE_TENANT_NAME,
        slug=QUARANTINE_TENANT_SLUG,
        status=TENANT_STATUS_INACTIVE,
    )
    session.add(tenant)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("quarantine_tenant_create_raced slug=%s", QUARANTINE_TENANT_SLUG)
        result = await session.execute(select(Tenant.id).where(Tenant.slug == QUARANTINE_TENANT_SLUG).limit(1))
        tenant_id = result.scalar_one()
        _quarantine_tenant_cache[QUARANTINE_TENANT_SLUG] = tenant_id
        return tenant_id
    logger.info("quarantine_tenant_created tenant_id=%s", tenant.id)
    _quarantine_tenant_cache[QUARANTINE_TENANT_SLUG] = tenant.id
    return tenant.id
