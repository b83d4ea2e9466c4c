from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import Settings, get_settings
from tenantguard.core.errors import QuarantineError
from tenantguard.domain.models import Client, Project, Task, Team, User, Workspace
from tenantguard.persistence.repos.tenants import get_quarantine_tenant_id, get_tenant
from tenantguard.services.audit import record_event
from tenantguard.services.guarded_actions import QUARANTINE_DELETE, AuditActor, run_guarded


logger = logging.getLogger(__name__)

QUARANTINE_TABLES: dict[str, Any] = {
    "projects": Project,
    "tasks": Task,
    "teams": Team,
    "users": User,
}
# Columns matched by the ``q`` search filter, per table.
_SEARCH_COLUMNS: dict[str, tuple[str, ...]] = {
    "projects": ("id", "name"),
    "tasks": ("id", "title"),
    "teams": ("id", "name"),
    "users": ("id", "email", "name"),
}
# Ownership references an operator may set while moving a row out of quarantine.
_ASSIGNABLE_REFERENCES: dict[str, tuple[str, ...]] = {
    "projects": ("workspace_id", "client_id"),
    "tasks": ("project_id",),
    "teams": ("workspace_id",),
    "users": (),
}
# Rows that block a permanent delete: (child column, error code, message).
_DELETE_BLOCKERS: dict[str, tuple[Any, str, str]] = {
    "projects": (Task.project_id, "HAS_DEPENDENT_TASKS", "Cannot delete: has dependent tasks"),
    "tasks": (Task.parent_task_id, "HAS_DEPENDENT_SUBTASKS", "Cannot delete: has dependent subtasks"),
}


@dataclass(frozen=True)
class QuarantineAssignment:
    tenant_id: str
    workspace_id: str | None = None
    project_id: str | None = None
    client_id: str | None = None


def _model_for(table: str) -> Any:
    model = QUARANTINE_TABLES.get(table)
    if model is None:
        raise QuarantineError(
            "INVALID_TABLE",
            f"Invalid table. Must be one of: {', '.join(QUARANTINE_TABLES)}",
        )
    return model


def _row_payload(table: str, row: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": row.id, "created_at": row.created_at.isoformat() if row.created_at else None}
    for column in _SEARCH_COLUMNS[table][1:]:
        payload[column] = getattr(row, column)
    for column in _ASSIGNABLE_REFERENCES[table]:
        payload[column] = getattr(row, column)
    if table in ("projects", "tasks"):
        payload["created_by"] = row.created_by
    if table == "users":
        payload["role"] = row.role
    return payload


def _require_quarantine_tenant(quarantine_tenant_id: str | None) -> str:
    if quarantine_tenant_id is None:
        raise QuarantineError("NO_QUARANTINE_TENANT", "No quarantine tenant exists")
    return quarantine_tenant_id


async def _load_quarantined(session: AsyncSession, table: str, row_id: str, quarantine_tenant_id: str) -> Any:
    model = _model_for(table)
    result = await session.execute(
        select(model).where(model.id == row_id, model.tenant_id == quarantine_tenant_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise QuarantineError("NOT_FOUND", f"{table[:-1].capitalize()} not found in quarantine", status_code=404)
    return row


async def quarantine_summary(session: AsyncSession) -> dict[str, Any]:
    """Count the rows parked in the quarantine tenant, per table."""
    quarantine_tenant_id = await get_quarantine_tenant_id(session)
    counts: dict[str, int] = {table: 0 for table in QUARANTINE_TABLES}
    if quarantine_tenant_id is not None:
        for table, model in QUARANTINE_TABLES.items():
            stmt = select(func.count()).select_from(model).where(model.tenant_id == quarantine_tenant_id)
            counts[table] = int((await session.execute(stmt)).scalar_one())
    return {
        "quarantine_tenant_id": quarantine_tenant_id,
        "exists": quarantine_tenant_id is not None,
        "counts": counts,
        "total": sum(counts.values()),
    }


async def list_quarantined(
    session: AsyncSession,
    *,
    table: str,
    page: int = 1,
    limit: int = 50,
    q: str | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    model = _model_for(table)
    resolved = settings or get_settings()
    page = max(1, page)
    limit = min(resolved.quarantine_max_page_size, max(1, limit))

    quarantine_tenant_id = await get_quarantine_tenant_id(session)
    if quarantine_tenant_id is None:
        return {"rows": [], "total": 0, "page": page, "limit": limit, "table": table}

    conditions = [model.tenant_id == quarantine_tenant_id]
    if q:
        pattern = f"%{q.lower()}%"
        conditions.append(
            or_(*[func.lower(getattr(model, column)).like(pattern) for column in _SEARCH_COLUMNS[table]])
        )

    total = int(
        (await session.execute(select(func.count()).select_from(model).where(*conditions))).scalar_one()
    )
    rows = (
        await session.execute(
            select(model)
            .where(*conditions)
            .order_by(model.created_at.desc(), model.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    return {
        "rows": [_row_payload(table, row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "table": table,
    }


async def _validate_assignment(session: AsyncSession, assignment: QuarantineAssignment, quarantine_id: str) -> None:
    if assignment.tenant_id == quarantine_id:
        raise QuarantineError("INVALID_TARGET", "Rows cannot be assigned to the quarantine tenant")
    if await get_tenant(session, assignment.tenant_id) is None:
        raise QuarantineError("TENANT_NOT_FOUND", "Target tenant not found")
    if assignment.workspace_id:
        workspace = await session.get(Workspace, assignment.workspace_id)
        if workspace is None or workspace.tenant_id != assignment.tenant_id:
            raise QuarantineError("INVALID_WORKSPACE", "Workspace not found or does not belong to tenant")
    if assignment.project_id:
        project = await session.get(Project, assignment.project_id)
        if project is None or project.tenant_id != assignment.tenant_id:
            raise QuarantineError("INVALID_PROJECT", "Project not found or does not belong to tenant")
    if assignment.client_id:
        client = await session.get(Client, assignment.client_id)
        if client is None or client.tenant_id != assignment.tenant_id:
            raise QuarantineError("INVALID_CLIENT", "Client not found or does not belong to tenant")


async def assign_quarantined(
    session: AsyncSession,
    *,
    table: str,
    row_id: str,
    assignment: QuarantineAssignment,
    actor: AuditActor,
) -> dict[str, Any]:
    """Move one row out of quarantine into a real tenant.

    Only rows currently owned by the quarantine tenant are eligible; the update and its
    audit event commit together.
    """
    model = _model_for(table)
    quarantine_tenant_id = _require_quarantine_tenant(await get_quarantine_tenant_id(session))
    await _validate_assignment(session, assignment, quarantine_tenant_id)

    values: dict[str, Any] = {"tenant_id": assignment.tenant_id}
    for column in _ASSIGNABLE_REFERENCES[table]:
        value = getattr(assignment, column)
        if value:
            values[column] = value

    outcome = await session.execute(
        update(model)
        .where(model.id == row_id, model.tenant_id == quarantine_tenant_id)
        .values(**values)
    )
    if outcome.rowcount != 1:
        await session.rollback()
        raise QuarantineError("NOT_FOUND", f"{table[:-1].capitalize()} not found in quarantine", status_code=404)

    await record_event(
        session=session,
        tenant_id=assignment.tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        event_type="quarantine.assigned",
        outcome="success",
        description=f"Assigned {table} row {row_id} out of quarantine",
        resource_type=table,
        resource_id=row_id,
        request_id=actor.request_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata={"from_tenant_id": quarantine_tenant_id, "assignment": values},
        commit=True,
        best_effort=False,
    )
    logger.info("quarantine_row_assigned table=%s id=%s tenant_id=%s", table, row_id, assignment.tenant_id)
    return {"table": table, "id": row_id, "assigned": values}


async def archive_quarantined(
    session: AsyncSession,
    *,
    table: str,
    row_id: str,
    actor: AuditActor,
) -> dict[str, Any]:
    """Deactivate a quarantined user without moving it.

    Only users support archiving. Other tables answer ``archived: False`` and leave the
    row untouched; they leave quarantine through assign or delete.
    """
    _model_for(table)
    quarantine_tenant_id = _require_quarantine_tenant(await get_quarantine_tenant_id(session))
    if table != "users":
        return {
            "table": table,
            "id": row_id,
            "archived": False,
            "message": f"Archive not supported for {table}. Use assign or delete instead",
        }

    user = await _load_quarantined(session, table, row_id, quarantine_tenant_id)
    user.is_active = False
    await record_event(
        session=session,
        tenant_id=quarantine_tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        event_type="quarantine.archived",
        outcome="success",
        description=f"Archived {table} row {row_id} in quarantine",
        resource_type=table,
        resource_id=row_id,
        request_id=actor.request_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata={"table": table, "row_id": row_id},
        commit=True,
        best_effort=False,
    )
    logger.info("quarantine_row_archived table=%s id=%s", table, row_id)
    return {"table": table, "id": row_id, "archived": True, "message": "User deactivated"}


async def delete_quarantined(
    session: AsyncSession,
    *,
    table: str,
    row_id: str,
    confirm: str | None,
    confirm_phrase: str | None,
    actor: AuditActor,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Permanently delete one quarantined row.

    Runs as the ``quarantine_delete`` guarded action: the delete flag and the
    ``X-Confirm-Delete`` header are checked first, then the body must repeat the same
    token as ``confirm_phrase``. Projects that still have tasks and tasks that still have
    subtasks are refused.
    """
    quarantine_tenant_id = await get_quarantine_tenant_id(session)

    async def _delete() -> dict[str, Any]:
        if confirm_phrase != QUARANTINE_DELETE.token:
            raise QuarantineError(
                "CONFIRMATION_PHRASE_MISMATCH",
                f"Confirmation phrase mismatch. confirm_phrase must be '{QUARANTINE_DELETE.token}'",
            )
        _model_for(table)
        owner_id = _require_quarantine_tenant(quarantine_tenant_id)
        row = await _load_quarantined(session, table, row_id, owner_id)
        blocker = _DELETE_BLOCKERS.get(table)
        if blocker is not None:
            column, code, message = blocker
            dependents = await session.execute(select(func.count()).select_from(Task).where(column == row_id))
            if dependents.scalar_one():
                raise QuarantineError(code, message)
        try:
            await session.delete(row)
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise QuarantineError(
                "HAS_DEPENDENTS", "Row is still referenced by other records", status_code=409
            ) from exc
        logger.info("quarantine_row_deleted table=%s id=%s", table, row_id)
        return {"table": table, "id": row_id, "deleted": True}

    return await run_guarded(
        session,
        QUARANTINE_DELETE,
        confirm=confirm,
        actor=replace(actor, tenant_id=quarantine_tenant_id),
        operation=_delete,
        description=f"Permanently deleted {table} row {row_id} from quarantine",
        metadata=lambda outcome: {"table": table, "row_id": row_id},
        resource_type=table,
        resource_id=row_id,
        settings=settings,
    )
