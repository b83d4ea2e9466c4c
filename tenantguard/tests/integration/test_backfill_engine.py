from __future__ import annotations

import argparse
import json

import pytest
from sqlalchemy import Update, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scripts import backfill_tenant_ids as backfill_script
from tenantguard.core.config import QUARANTINE_TENANT_SLUG, Settings, get_settings
from tenantguard.core.errors import BackfillInProgressError, ConfirmationRequiredError, GateDisabledError
from tenantguard.domain.models import (
    AuditEvent,
    Client,
    Invitation,
    MaintenanceLock,
    Project,
    Task,
    Team,
    Tenant,
    User,
    Workspace,
    WorkspaceMember,
)
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.guarded_actions import AuditActor
from tenantguard.services.tenancy.backfill import (
    BACKFILL_LOCK_NAME,
    acquire_maintenance_lock,
    execute_backfill,
    release_maintenance_lock,
    run_backfill,
    scan_missing_tenant_ids,
)
from tenantguard.tests.utils.seed import count_events, seed, snapshot, tenant, tenant_id_of


APPLY_TOKEN = "APPLY_TENANTID_BACKFILL"
ACTOR = AuditActor(actor_id="u-operator", actor_role="super_user")


def _enabled() -> Settings:
    return Settings(backfill_tenant_ids_allowed=True)


async def _seed_legacy_graph() -> None:
    # Three tenants with a mix of resolvable and orphaned legacy rows.
    await seed(
        tenant("tenant-a"),
        tenant("tenant-b"),
        tenant("tenant-c"),
        Workspace(id="ws-a", tenant_id="tenant-a", name="A"),
        Workspace(id="ws-legacy", tenant_id=None, name="Legacy"),
        Client(id="client-c", tenant_id="tenant-c", name="C"),
        User(id="user-b", tenant_id="tenant-b", email="b@example.com", role="employee"),
        User(id="user-multi", tenant_id=None, email="Multi@Example.com", role="employee"),
        User(id="user-lonely", tenant_id=None, email="lonely@example.com", role="client"),
        User(id="user-creator", tenant_id=None, email="creator@example.com", role="employee"),
        User(id="user-root", tenant_id=None, email="root@example.com", role="super_user"),
        WorkspaceMember(workspace_id="ws-a", user_id="user-multi"),
        Invitation(id="inv-1", tenant_id="tenant-b", email="multi@example.com"),
        # Workspace wins over client and creator.
        Project(id="p-ws", tenant_id=None, workspace_id="ws-a", client_id="client-c", created_by="user-b", name="ws"),
        Project(id="p-client", tenant_id=None, workspace_id="ws-legacy", client_id="client-c", name="client"),
        Project(id="p-orphan", tenant_id=None, name="orphan"),
        Project(id="p-creator", tenant_id=None, created_by="user-creator", workspace_id="ws-a", name="creator"),
        Task(id="t-ws", tenant_id=None, project_id="p-ws", title="follows project"),
        Task(id="t-orphan", tenant_id=None, project_id="p-orphan", title="orphan"),
        Task(id="t-personal", tenant_id=None, created_by="user-b", title="personal"),
        Team(id="team-a", tenant_id=None, workspace_id="ws-a", name="team a"),
        Team(id="team-none", tenant_id=None, name="team none"),
    )


async def _quarantine_id() -> str | None:
    async with SessionLocal() as session:
        result = await session.execute(select(Tenant.id).where(Tenant.slug == QUARANTINE_TENANT_SLUG))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_apply_infers_tenants_in_precedence_order() -> None:
    await _seed_legacy_graph()
    async with SessionLocal() as session:
        result = await execute_backfill(
            session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
        )

    quarantine_id = await _quarantine_id()
    assert quarantine_id is not None
    assert result.quarantine_tenant_id == quarantine_id

    assert await tenant_id_of(Project, "p-ws") == "tenant-a"
    assert await tenant_id_of(Project, "p-client") == "tenant-c"
    assert await tenant_id_of(Project, "p-orphan") == quarantine_id
    # Tasks read the project tenant assigned earlier in the same run.
    assert await tenant_id_of(Task, "t-ws") == "tenant-a"
    assert await tenant_id_of(Task, "t-personal") == "tenant-b"
    # A quarantined project is not a source, so its task is quarantined too.
    assert await tenant_id_of(Task, "t-orphan") == quarantine_id
    assert await tenant_id_of(Team, "team-a") == "tenant-a"
    assert await tenant_id_of(Team, "team-none") == quarantine_id

    # Membership in A plus an invitation from B is ambiguous.
    assert await tenant_id_of(User, "user-multi") == quarantine_id
    assert await tenant_id_of(User, "user-lonely") == quarantine_id
    # Inferred through the project the user created in workspace A.
    assert await tenant_id_of(User, "user-creator") == "tenant-a"
    assert await tenant_id_of(User, "user-root") is None

    payload = result.to_dict()
    assert payload["entities"]["users"]["ambiguous_reasons"] == {
        "user-lonely": "no_associations",
        "user-multi": "multiple_tenants",
    }
    assert payload["totals"] == {"updated": 7, "quarantined": 5, "errors": 0}


@pytest.mark.asyncio
async def test_dry_run_reports_apply_counts_without_writing() -> None:
    await _seed_legacy_graph()
    before = await snapshot(Project, Task, Team, User)

    async with SessionLocal() as session:
        dry = await execute_backfill(session, mode=None, confirm=None, actor=ACTOR)

    assert dry.mode == "dry_run"
    assert await snapshot(Project, Task, Team, User) == before
    assert await _quarantine_id() is None
    assert await count_events() == 0

    async with SessionLocal() as session:
        applied = await execute_backfill(
            session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
        )

    for name, stats in dry.entities.items():
        assert stats.updated == applied.entities[name].updated
        assert stats.quarantined == applied.entities[name].quarantined
    assert dry.quarantine_tenant_id is None


@pytest.mark.asyncio
async def test_second_apply_is_a_no_op() -> None:
    await _seed_legacy_graph()
    async with SessionLocal() as session:
        await execute_backfill(session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled())
    after_first = await snapshot(Project, Task, Team, User)

    async with SessionLocal() as session:
        second = await execute_backfill(
            session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
        )

    assert second.total_updated == 0
    assert second.total_quarantined == 0
    assert await snapshot(Project, Task, Team, User) == after_first
    async with SessionLocal() as session:
        tenants = await session.execute(
            select(func.count()).select_from(Tenant).where(Tenant.slug == QUARANTINE_TENANT_SLUG)
        )
        assert tenants.scalar_one() == 1


@pytest.mark.asyncio
async def test_apply_writes_one_audit_event_per_invocation() -> None:
    await _seed_legacy_graph()
    async with SessionLocal() as session:
        await execute_backfill(session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled())
    assert await count_events(event_type="tenancy.backfill.applied") == 1

    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.actor_id == "u-operator"
    assert event.outcome == "success"
    assert event.metadata_json["action"] == "tenantid_backfill"
    assert event.metadata_json["result"]["totals"]["quarantined"] == 5


@pytest.mark.asyncio
async def test_apply_without_ambiguity_never_creates_quarantine() -> None:
    await seed(
        tenant("tenant-a"),
        Workspace(id="ws-a", tenant_id="tenant-a", name="A"),
        Project(id="p1", tenant_id=None, workspace_id="ws-a", name="p1"),
    )
    async with SessionLocal() as session:
        result = await run_backfill(session, mode="apply")
    assert result.total_updated == 1
    assert result.quarantine_tenant_id is None
    assert await _quarantine_id() is None


@pytest.mark.asyncio
async def test_gates_fail_before_any_write() -> None:
    await _seed_legacy_graph()
    before = await snapshot(Project, Task, Team, User)

    async with SessionLocal() as session:
        with pytest.raises(GateDisabledError):
            await execute_backfill(session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=Settings())
        with pytest.raises(ConfirmationRequiredError):
            await execute_backfill(session, mode="apply", confirm="yes", actor=ACTOR, settings=_enabled())

    assert await snapshot(Project, Task, Team, User) == before
    assert await count_events() == 0
    async with SessionLocal() as session:
        locks = await session.execute(select(func.count()).select_from(MaintenanceLock))
        assert locks.scalar_one() == 0


@pytest.mark.asyncio
async def test_concurrent_apply_is_rejected_while_lock_is_held() -> None:
    await _seed_legacy_graph()
    async with SessionLocal() as holder_session:
        lock_id = await acquire_maintenance_lock(holder_session, BACKFILL_LOCK_NAME, ttl_s=600)
        async with SessionLocal() as session:
            with pytest.raises(BackfillInProgressError):
                await execute_backfill(
                    session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
                )
        await release_maintenance_lock(holder_session, BACKFILL_LOCK_NAME, lock_id)

    assert await tenant_id_of(Project, "p-ws") is None

    async with SessionLocal() as session:
        result = await execute_backfill(
            session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
        )
    assert result.total_updated > 0


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed() -> None:
    async with SessionLocal() as session:
        await acquire_maintenance_lock(session, BACKFILL_LOCK_NAME, ttl_s=-1, holder="stale")
        lock_id = await acquire_maintenance_lock(session, BACKFILL_LOCK_NAME, ttl_s=600)
        assert lock_id != "stale"


@pytest.mark.asyncio
async def test_scan_counts_missing_rows_and_notes() -> None:
    await _seed_legacy_graph()
    await seed(Client(id="client-legacy", tenant_id=None, name="legacy"))
    async with SessionLocal() as session:
        scan = await scan_missing_tenant_ids(session, settings=Settings())

    assert scan.missing == {"users": 3, "projects": 4, "tasks": 3, "teams": 2, "clients": 1}
    assert scan.total_missing == 13
    assert scan.backfill_allowed is False
    payload = scan.to_dict()
    assert payload["quarantine_tenant_exists"] is False
    assert any("BACKFILL_TENANT_IDS_ALLOWED" in note for note in payload["notes"])


@pytest.mark.asyncio
async def test_backfill_script_runs_dry_run_and_apply(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    await _seed_legacy_graph()
    dry_exit = await backfill_script._run(argparse.Namespace(mode="dry_run", confirm=None, actor="ops"))
    assert dry_exit == 0
    assert json.loads(capsys.readouterr().out)["mode"] == "dry_run"

    refused = await backfill_script._run(argparse.Namespace(mode="apply", confirm=None, actor="ops"))
    assert refused == 2

    monkeypatch.setenv("BACKFILL_TENANT_IDS_ALLOWED", "true")
    get_settings.cache_clear()
    applied = await backfill_script._run(
        argparse.Namespace(mode="apply", confirm=APPLY_TOKEN, actor="ops")
    )
    assert applied == 0
    assert await tenant_id_of(Project, "p-ws") == "tenant-a"
    assert await count_events(event_type="tenancy.backfill.applied") == 1


def _fail_update_of(monkeypatch: pytest.MonkeyPatch, table: str, row_id: str) -> None:
    # Make the backfill UPDATE for one row raise; every other statement runs normally.
    original = AsyncSession.execute

    async def execute(self, statement, *args, **kwargs):
        if isinstance(statement, Update) and statement.table.name == table:
            rendered = str(statement.compile(compile_kwargs={"literal_binds": True}))
            if f"'{row_id}'" in rendered:
                raise SQLAlchemyError(f"write failed for {table}.{row_id}")
        return await original(self, statement, *args, **kwargs)

    monkeypatch.setattr(AsyncSession, "execute", execute)


@pytest.mark.asyncio
async def test_row_write_failure_is_rolled_back_and_the_run_continues(monkeypatch: pytest.MonkeyPatch) -> None:
    await _seed_legacy_graph()
    _fail_update_of(monkeypatch, "projects", "p-client")
    async with SessionLocal() as session:
        result = await execute_backfill(
            session, mode="apply", confirm=APPLY_TOKEN, actor=ACTOR, settings=_enabled()
        )

    assert result.entities["projects"].errors == 1
    assert result.total_errors == 1
    assert await tenant_id_of(Project, "p-client") is None
    # Rows after the failing one are still written.
    assert await tenant_id_of(Project, "p-ws") == "tenant-a"
    assert await tenant_id_of(Task, "t-ws") == "tenant-a"
    assert await tenant_id_of(Team, "team-a") == "tenant-a"
    assert result.to_dict()["totals"] == {"updated": 6, "quarantined": 5, "errors": 1}
    assert await count_events(event_type="tenancy.backfill.applied") == 1


@pytest.mark.asyncio
async def test_backfill_script_exits_nonzero_when_rows_fail(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    await _seed_legacy_graph()
    _fail_update_of(monkeypatch, "tasks", "t-personal")
    monkeypatch.setenv("BACKFILL_TENANT_IDS_ALLOWED", "true")
    get_settings.cache_clear()

    exit_code = await backfill_script._run(
        argparse.Namespace(mode="apply", confirm=APPLY_TOKEN, actor="ops")
    )
    assert exit_code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["entities"]["tasks"]["errors"] == 1
    assert payload["totals"]["errors"] == 1
    assert await tenant_id_of(Task, "t-personal") is None
    assert await tenant_id_of(Task, "t-ws") == "tenant-a"
