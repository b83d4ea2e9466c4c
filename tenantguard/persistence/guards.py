from __future__ import annotations

from sqlalchemy import and_, false


def tenant_predicate(model, tenant_id: str | None) -> object:
    # Build tenant predicates through a single helper so scoped queries stay uniform.
    # A missing tenant must match nothing; comparing to None would render IS NULL
    # and silently pull legacy rows through the scoped fast path.
    if not tenant_id:
        return false()
    return model.tenant_id == tenant_id


def legacy_predicate(model) -> object:
    # Match rows that predate tenant scoping.
    return model.tenant_id.is_(None)


def foreign_predicate(model, tenant_id: str | None) -> object:
    # Match rows owned by any tenant other than tenant_id; legacy rows are excluded.
    if not tenant_id:
        return model.tenant_id.is_not(None)
    return and_(model.tenant_id.is_not(None), model.tenant_id != tenant_id)
