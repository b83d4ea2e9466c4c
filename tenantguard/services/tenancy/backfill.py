"""Tenant id backfill driver.

Runs the inference rules over every row whose ``tenant_id`` is still null, one entity
type at a time: projects, tasks, teams, users. Later stages read the tenant ids resolved
by earlier stages of the same run through an in-memory overlay, which is also what lets
``dry_run`` report the exact counts ``apply`` would produce without writing anything.

Apply mode writes each row independently with ``UPDATE ... WHERE tenant_id IS NULL`` and
commits per row, so an interrupted run is resumable and a second run is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import SAMPLE_ID_LIMIT, Settings, get_settings
from tenantguard.core.errors import BackfillInProgressError, InvalidBackfillModeError
from tenantguard.domain.models import (
    ROLE_SUPER_USER,
    Client,
    Invitation,
    MaintenanceLock,
    Project,
    Task,
    Team,
    User,
    Workspace,
    WorkspaceMember,
)
from tenantguard.persistence.guards import legacy_predicate
from tenantguard.persistence.repos.tenants import (
    get_or_create_quarantine_tenant_id,
    get_quarantine_tenant_id,
)
from tenantguard.services.guarded_actions import (
    TENANTID_BACKFILL,
    AuditActor,
    check_gates,
    run_guarded,
)
from tenantguard.services.tenancy.inference import (
    Inference,
    infer_project_tenant,
    infer_task_tenant,
    infer_team_tenant,
    infer_user_tenant,
)


logger = logging.getLogger(__name__)

BackfillMode = Literal["dry_run", "apply"]

BACKFILL_MODE_DRY_RUN: BackfillMode = "dry_run"
BACKFILL_MODE_APPLY: BackfillMode = "apply"
BACKFILL_MODES: tuple[BackfillMode, ...] = (BACKFILL_MODE_DRY_RUN, BACKFILL_MODE_APPLY)

BACKFILL_LOCK_NAME = "tenantid_backfill"

# Fixed dependency order; each stage may read tenant ids resolved by earlier ones.
ENTITY_STAGES: tuple[str, ...] = ("projects", "tasks", "teams", "users")


@dataclass
class EntityBackfillStats:
    updated: int = 0
    quarantined: int = 0
    errors: int = 0
    ambiguous_samples: list[str] = field(default_factory=list)
    ambiguous_reasons: dict[str, str] = field(default_factory=dict)

    def record_ambiguous(self, row_id: str, reason: str) -> None:
        self.quarantined += 1
        if len(self.ambiguous_samples) < SAMPLE_ID_LIMIT:
            self.ambiguous_samples.append(row_id)
            self.ambiguous_reasons[row_id] = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "quarantined": self.quarantined,
            "errors": self.errors,
            "ambiguous_samples": list(self.ambiguous_samples),
            "ambiguous_reasons": dict(self.ambiguous_reasons),
        }


@dataclass
class BackfillResult:
    mode: BackfillMode
    started_at: datetime
    finished_at: datetime | None = None
    quarantine_tenant_id: str | None = None
    entities: dict[str, EntityBackfillStats] = field(
        default_factory=lambda: {name: EntityBackfillStats() for name in ENTITY_STAGES}
    )

    @property
    def total_updated(self) -> int:
        return sum(stats.updated for stats in self.entities.values())

    @property
    def total_quarantined(self) -> int:
        return sum(stats.quarantined for stats in self.entities.values())

    @property
    def total_errors(self) -> int:
        return sum(stats.errors for stats in self.entities.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            # Dry runs never create the sink, so only report it for apply.
            "quarantine_tenant_id": self.quarantine_tenant_id,
            "totals": {
                "updated": self.total_updated,
                "quarantined": self.total_quarantined,
                "errors": self.total_errors,
            },
            "entities": {name: stats.to_dict() for name, stats in self.entities.items()},
        }


@dataclass(frozen=True)
class TenantIdScan:
    missing: dict[str, int]
    total_missing: int
    backfill_allowed: bool
    quarantine_tenant_id: str | None
    notes: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "missing": dict(self.missing),
            "total_missing": self.total_missing,
            "backfill_allowed": self.backfill_allowed,
            "quarantine_tenant_exists": self.quarantine_tenant_id is not None,
            "quarantine_tenant_id": self.quarantine_tenant_id,
            "notes": list(self.notes),
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_backfill_mode(raw: str | None) -> BackfillMode:
    mode = raw or BACKFILL_MODE_DRY_RUN
    if mode not in BACKFILL_MODES:
        raise InvalidBackfillModeError("mode must be 'dry_run' or 'apply'")
    return mode  # type: ignore[return-value]


async def _count_null_tenant(session: AsyncSession, model: Any, *extra: Any) -> int:
    stmt = select(func.count()).select_from(model).where(legacy_predicate(model), *extra)
    return int((await session.execute(stmt)).scalar_one())


async def scan_missing_tenant_ids(
    session: AsyncSession, *, settings: Settings | None = None
) -> TenantIdScan:
    """Count rows still lacking a tenant id, per entity type. Read-only."""
    resolved = settings or get_settings()
    missing = {
        "users": await _count_null_tenant(session, User, User.role != ROLE_SUPER_USER),
        "projects": await _count_null_tenant(session, Project),
        "tasks": await _count_null_tenant(session, Task),
        "teams": await _count_null_tenant(session, Team),
        "clients": await _count_null_tenant(session, Client),
    }
    total_missing = sum(missing.values())
    quarantine_tenant_id = await get_quarantine_tenant_id(session)

    notes: list[str] = []
    if not resolved.backfill_tenant_ids_allowed:
        notes.append("Backfill is disabled. Set BACKFILL_TENANT_IDS_ALLOWED=true to enable apply mode.")
    if quarantine_tenant_id is None:
        notes.append("No quarantine tenant exists. One will be created during backfill if needed.")
    if missing["clients"]:
        notes.append("Clients are not inferred by the backfill; assign them through the quarantine manager.")
    if total_missing == 0:
        notes.append("All rows have tenant IDs assigned.")

    return TenantIdScan(
        missing=missing,
        total_missing=total_missing,
        backfill_allowed=resolved.backfill_tenant_ids_allowed,
        quarantine_tenant_id=quarantine_tenant_id,
        notes=notes,
    )


async def acquire_maintenance_lock(
    session: AsyncSession,
    name: str,
    *,
    ttl_s: int,
    holder: str | None = None,
) -> str:
    """Take the named single-flight lock or raise :class:`BackfillInProgressError`.

    Expired rows are reclaimed first; the primary key on ``name`` settles races between
    concurrent acquirers.
    """
    now = _utc_now()
    lock_id = holder or uuid4().hex
    # Compare expiry in SQL so naive sqlite timestamps behave like timestamptz.
    await session.execute(
        delete(MaintenanceLock).where(MaintenanceLock.name == name, MaintenanceLock.expires_at < now)
    )
    session.add(
        MaintenanceLock(
            name=name,
            holder=lock_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_s),
        )
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.info("maintenance_lock_busy name=%s", name)
        raise BackfillInProgressError("Another tenant id backfill is already running") from exc
    logger.info("maintenance_lock_acquired name=%s holder=%s ttl_s=%s", name, lock_id, ttl_s)
    return lock_id


async def release_maintenance_lock(session: AsyncSession, name: str, lock_id: str) -> None:
    # Only the holder may release; a reclaimed lock belongs to someone else now.
    try:
        await session.execute(
            delete(MaintenanceLock).where(MaintenanceLock.name == name, MaintenanceLock.holder == lock_id)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("maintenance_lock_release_failed name=%s holder=%s", name, lock_id, exc_info=exc)


async def _tenant_map(session: AsyncSession, model: Any) -> dict[str, str | None]:
    rows = await session.execute(select(model.id, model.tenant_id))
    return {row_id: tenant_id for row_id, tenant_id in rows.all()}


class _BackfillRun:
    def __init__(self, session: AsyncSession, mode: BackfillMode) -> None:
        self.session = session
        self.mode = mode
        self.result = BackfillResult(mode=mode, started_at=_utc_now())
        self.quarantine_tenant_id: str | None = None

    @property
    def applying(self) -> bool:
        return self.mode == BACKFILL_MODE_APPLY

    async def _quarantine_target(self) -> str:
        if self.quarantine_tenant_id is None:
            self.quarantine_tenant_id = await get_or_create_quarantine_tenant_id(self.session)
        return self.quarantine_tenant_id

    async def _write(self, entity: str, model: Any, row_id: str, inference: Inference) -> bool:
        """Persist one row's outcome. Returns False when the row was not written."""
        stats = self.result.entities[entity]
        if not self.applying:
            return True
        try:
            tenant_id = inference.tenant_id or await self._quarantine_target()
            outcome = await self.session.execute(
                update(model)
                .where(model.id == row_id, legacy_predicate(model))
                .values(tenant_id=tenant_id)
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            stats.errors += 1
            logger.warning("backfill_row_failed entity=%s id=%s", entity, row_id, exc_info=exc)
            return False
        if outcome.rowcount != 1:
            # Another writer populated the row after it was selected.
            logger.info("backfill_row_skipped entity=%s id=%s", entity, row_id)
            return False
        return True

    async def _settle(self, entity: str, model: Any, row_id: str, inference: Inference) -> bool:
        stats = self.result.entities[entity]
        if not await self._write(entity, model, row_id, inference):
            return False
        if inference.resolved:
            stats.updated += 1
        else:
            stats.record_ambiguous(row_id, inference.source)
        return True

    async def run(self) -> BackfillResult:
        session = self.session
        # Dry runs only look the sink up; apply creates it on first ambiguous row.
        self.quarantine_tenant_id = await get_quarantine_tenant_id(session)
        excluded = self.quarantine_tenant_id

        workspace_tenants = await _tenant_map(session, Workspace)
        client_tenants = await _tenant_map(session, Client)
        user_tenants = await _tenant_map(session, User)
        project_tenants = await _tenant_map(session, Project)

        # Projects
        rows = (
            await session.execute(
                select(Project.id, Project.workspace_id, Project.client_id, Project.created_by)
                .where(legacy_predicate(Project))
                .order_by(Project.id)
            )
        ).all()
        for project_id, workspace_id, client_id, created_by in rows:
            inference = infer_project_tenant(
                workspace_id=workspace_id,
                client_id=client_id,
                created_by=created_by,
                workspace_tenants=workspace_tenants,
                client_tenants=client_tenants,
                user_tenants=user_tenants,
                quarantine_tenant_id=excluded,
            )
            if await self._settle("projects", Project, project_id, inference):
                project_tenants[project_id] = inference.tenant_id

        # Tasks read the project overlay, so they see this run's project results.
        rows = (
            await session.execute(
                select(Task.id, Task.project_id, Task.created_by)
                .where(legacy_predicate(Task))
                .order_by(Task.id)
            )
        ).all()
        for task_id, project_id, created_by in rows:
            inference = infer_task_tenant(
                project_id=project_id,
                created_by=created_by,
                project_tenants=project_tenants,
                user_tenants=user_tenants,
                quarantine_tenant_id=excluded,
            )
            await self._settle("tasks", Task, task_id, inference)

        # Teams
        rows = (
            await session.execute(
                select(Team.id, Team.workspace_id).where(legacy_predicate(Team)).order_by(Team.id)
            )
        ).all()
        for team_id, workspace_id in rows:
            inference = infer_team_tenant(
                workspace_id=workspace_id,
                workspace_tenants=workspace_tenants,
                quarantine_tenant_id=excluded,
            )
            await self._settle("teams", Team, team_id, inference)

        # Users
        membership_rows = await session.execute(
            select(WorkspaceMember.user_id, Workspace.tenant_id).join(
                Workspace, Workspace.id == WorkspaceMember.workspace_id
            )
        )
        memberships: dict[str, list[str | None]] = {}
        for user_id, tenant_id in membership_rows.all():
            memberships.setdefault(user_id, []).append(tenant_id)

        invitation_rows = await session.execute(select(Invitation.email, Invitation.tenant_id))
        invitations: dict[str, list[str | None]] = {}
        for email, tenant_id in invitation_rows.all():
            if email:
                invitations.setdefault(email.strip().lower(), []).append(tenant_id)

        creator_rows = await session.execute(
            select(Project.id, Project.created_by).where(Project.created_by.is_not(None))
        )
        created_projects: dict[str, list[str]] = {}
        for project_id, created_by in creator_rows.all():
            created_projects.setdefault(created_by, []).append(project_id)

        rows = (
            await session.execute(
                select(User.id, User.email, User.role)
                .where(legacy_predicate(User), User.role != ROLE_SUPER_USER)
                .order_by(User.id)
            )
        ).all()
        for user_id, email, role in rows:
            inference = infer_user_tenant(
                role=role,
                membership_tenants=memberships.get(user_id, []),
                invitation_tenants=invitations.get((email or "").strip().lower(), []),
                created_project_tenants=[
                    project_tenants.get(project_id) for project_id in created_projects.get(user_id, [])
                ],
                quarantine_tenant_id=excluded,
            )
            await self._settle("users", User, user_id, inference)

        self.result.finished_at = _utc_now()
        if self.applying:
            self.result.quarantine_tenant_id = self.quarantine_tenant_id
        return self.result


async def run_backfill(session: AsyncSession, *, mode: BackfillMode) -> BackfillResult:
    """Run one backfill pass. Gates, locking and auditing belong to the caller."""
    mode = validate_backfill_mode(mode)
    logger.info("tenantid_backfill_started mode=%s", mode)
    result = await _BackfillRun(session, mode).run()
    logger.info(
        "tenantid_backfill_finished mode=%s updated=%s quarantined=%s errors=%s",
        mode,
        result.total_updated,
        result.total_quarantined,
        result.total_errors,
    )
    return result


async def execute_backfill(
    session: AsyncSession,
    *,
    mode: str | None,
    confirm: str | None,
    actor: AuditActor,
    settings: Settings | None = None,
) -> BackfillResult:
    """Entry point shared by the admin route and the CLI.

    ``dry_run`` is ungated and unaudited. ``apply`` passes both gates, holds the
    single-flight lock for the whole run and writes one audit event per invocation.
    """
    resolved_mode = validate_backfill_mode(mode)
    if resolved_mode == BACKFILL_MODE_DRY_RUN:
        return await run_backfill(session, mode=resolved_mode)

    resolved = settings or get_settings()
    # Gate failures must not touch the lock table either.
    check_gates(TENANTID_BACKFILL, confirm=confirm, settings=resolved)
    lock_id = await acquire_maintenance_lock(
        session, BACKFILL_LOCK_NAME, ttl_s=resolved.backfill_lock_ttl_s
    )
    try:
        return await run_guarded(
            session,
            TENANTID_BACKFILL,
            confirm=confirm,
            actor=actor,
            operation=lambda: run_backfill(session, mode=resolved_mode),
            resource_type="tenant_id_backfill",
            settings=resolved,
        )
    finally:
        await release_maintenance_lock(session, BACKFILL_LOCK_NAME, lock_id)
