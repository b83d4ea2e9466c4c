from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import Settings, get_settings
from tenantguard.core.errors import ConfirmationRequiredError, GateDisabledError
from tenantguard.services.audit import record_event


logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class GuardedAction:
    # Static definition of one administrative mutation and its two gates.
    name: str
    flag: str
    header: str
    token: str
    event_type: str
    description: str


TENANTID_BACKFILL = GuardedAction(
    name="tenantid_backfill",
    flag="backfill_tenant_ids_allowed",
    header="X-Confirm-Backfill",
    token="APPLY_TENANTID_BACKFILL",
    event_type="tenancy.backfill.applied",
    description="Tenant id backfill applied",
)
TENANT_HEALTH_RECOMPUTE = GuardedAction(
    name="tenant_health_recompute",
    flag="super_debug_actions_allowed",
    header="X-Confirm-Action",
    token="RECOMPUTE_TENANT_HEALTH",
    event_type="tenancy.health.recomputed",
    description="Tenant health recomputed",
)
CACHE_INVALIDATE = GuardedAction(
    name="cache_invalidate",
    flag="super_debug_actions_allowed",
    header="X-Confirm-Action",
    token="INVALIDATE_CACHE",
    event_type="tenancy.cache.invalidated",
    description="Tenancy caches invalidated",
)
QUARANTINE_DELETE = GuardedAction(
    name="quarantine_delete",
    flag="super_debug_delete_allowed",
    header="X-Confirm-Delete",
    token="DELETE_QUARANTINED_ROW",
    event_type="quarantine.deleted",
    description="Quarantined row permanently deleted",
)

GUARDED_ACTIONS: dict[str, GuardedAction] = {
    action.name: action
    for action in (TENANTID_BACKFILL, TENANT_HEALTH_RECOMPUTE, CACHE_INVALIDATE, QUARANTINE_DELETE)
}


@dataclass(frozen=True)
class AuditActor:
    # Identity and request hints copied onto the audit row.
    actor_id: str | None
    actor_role: str | None
    tenant_id: str | None = None
    actor_type: str = "user"
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def action_enabled(action: GuardedAction, settings: Settings | None = None) -> bool:
    resolved = settings or get_settings()
    return bool(getattr(resolved, action.flag))


def check_gates(
    action: GuardedAction,
    *,
    confirm: str | None,
    settings: Settings | None = None,
) -> None:
    """Raise before anything executes if either gate fails.

    The configuration flag is checked first, so a disabled action reports 403 even when
    the confirmation header is also missing.
    """
    if not action_enabled(action, settings):
        logger.info("guarded_action_disabled action=%s flag=%s", action.name, action.flag)
        raise GateDisabledError(action.name, action.flag)
    # Exact match only; no trimming or case folding.
    if confirm != action.token:
        logger.info("guarded_action_unconfirmed action=%s header=%s", action.name, action.header)
        raise ConfirmationRequiredError(action.name, action.header, action.token)


def confirmation_phrases(settings: Settings | None = None) -> dict[str, dict[str, Any]]:
    # Discoverability aid for operators, not a security boundary.
    resolved = settings or get_settings()
    return {
        action.name: {
            "enabled": action_enabled(action, resolved),
            "flag": action.flag.upper(),
            "header": action.header,
            "token": action.token,
        }
        for action in GUARDED_ACTIONS.values()
    }


def _default_metadata(result: Any) -> dict[str, Any]:
    to_dict = getattr(result, "to_dict", None)
    if callable(to_dict):
        return {"result": to_dict()}
    if isinstance(result, dict):
        return {"result": result}
    return {}


async def run_guarded(
    session: AsyncSession,
    action: GuardedAction,
    *,
    confirm: str | None,
    actor: AuditActor,
    operation: Callable[[], Awaitable[R]],
    description: str | None = None,
    metadata: Callable[[R], dict[str, Any]] | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    settings: Settings | None = None,
) -> R:
    """Check both gates, run the mutation, then write exactly one audit event.

    The audit write is not best-effort: if it fails the caller sees the error, so a
    completed mutation is never reported as successful without its audit row.
    """
    check_gates(action, confirm=confirm, settings=settings)
    result = await operation()
    event_metadata = {"action": action.name}
    event_metadata.update((metadata or _default_metadata)(result))
    await record_event(
        session=session,
        tenant_id=actor.tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        event_type=action.event_type,
        outcome="success",
        description=description or action.description,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=actor.request_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata=event_metadata,
        commit=True,
        best_effort=False,
    )
    logger.info("guarded_action_completed action=%s actor_id=%s", action.name, actor.actor_id)
    return result
