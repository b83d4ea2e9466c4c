from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Sequence, TypeVar

from tenantguard.services.tenancy.enforcement import MODE_OFF, MODE_STRICT, TenancyPolicy, classify


class TenantOwned(Protocol):
    id: Any
    tenant_id: str | None


T = TypeVar("T", bound=TenantOwned)


async def fetch_with_policy(
    policy: TenancyPolicy,
    *,
    resource_type: str,
    resource_id: str,
    scoped_fetch: Callable[[], Awaitable[T | None]],
    unscoped_fetch: Callable[[], Awaitable[T | None]],
) -> T | None:
    """Resolve a single resource under the current enforcement mode.

    Returns ``None`` both when the row does not exist and when strict mode blocks a
    cross-tenant read, so callers answer 404 either way and never leak existence.
    """
    if policy.mode == MODE_OFF:
        return await unscoped_fetch()

    scoped = await scoped_fetch()
    if scoped is not None:
        return scoped

    # The unscoped lookup only classifies the miss; the decision table still rules.
    unscoped = await unscoped_fetch()
    if unscoped is None:
        return None

    decision = policy.evaluate(
        resource_type=resource_type,
        resource_id=resource_id,
        resource_tenant_id=unscoped.tenant_id,
    )
    if not decision.allowed:
        return None
    return unscoped


async def list_with_policy(
    policy: TenancyPolicy,
    *,
    resource_type: str,
    scoped_fetch: Callable[[], Awaitable[Sequence[T]]],
    legacy_fetch: Callable[[int | None], Awaitable[Sequence[T]]],
    foreign_fetch: Callable[[int | None], Awaitable[Sequence[T]]],
    unscoped_fetch: Callable[[], Awaitable[Sequence[T]]],
    limit: int | None = None,
    sort_key: Callable[[T], Any] | None = None,
) -> list[T]:
    """Union scoped rows with the rows the scoped query excluded, then filter by mode.

    ``legacy_fetch`` returns null-tenant rows and ``foreign_fetch`` rows owned by another
    tenant; each takes its own row cap. Legacy rows are always returned in every mode.
    Cross-tenant rows survive only outside strict mode; strict still reads one so the
    mismatch warning fires. ``limit`` caps the union, ordered by ``sort_key`` when given.
    """
    if policy.mode == MODE_OFF:
        return list(await unscoped_fetch())

    scoped = list(await scoped_fetch())
    legacy = list(await legacy_fetch(limit))
    # Strict returns no foreign rows; one row still raises the mismatch signal.
    foreign_cap = 1 if policy.mode == MODE_STRICT else limit
    foreign = list(await foreign_fetch(foreign_cap))
    scoped_ids = {row.id for row in scoped}

    # One decision (and one warning) per reason, not per row.
    decisions: dict[str, bool] = {}
    combined: list[T] = list(scoped)
    for row in legacy + foreign:
        if row.id in scoped_ids:
            continue
        reason = classify(row.tenant_id, policy.effective_tenant_id)
        if reason not in decisions:
            decision = policy.evaluate(
                resource_type=resource_type,
                resource_id=str(row.id),
                resource_tenant_id=row.tenant_id,
            )
            decisions[reason] = decision.allowed
        if decisions[reason]:
            combined.append(row)

    if sort_key is not None:
        combined.sort(key=sort_key)
    if limit is not None:
        combined = combined[:limit]
    return combined


def validate_ownership(
    policy: TenancyPolicy,
    *,
    resource_type: str,
    resource: TenantOwned | None,
) -> bool:
    """Approve or deny mutating an already-loaded resource.

    ``False`` only happens in strict mode for a cross-tenant row; the HTTP layer turns it
    into a 403 because the row is known to exist.
    """
    if resource is None:
        return False
    if policy.mode == MODE_OFF:
        return True
    decision = policy.evaluate(
        resource_type=resource_type,
        resource_id=str(resource.id),
        resource_tenant_id=resource.tenant_id,
    )
    return decision.allowed
