from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantguard.core.config import Settings
from tenantguard.core.errors import ConfirmationRequiredError, GateDisabledError, QuarantineError
from tenantguard.domain.models import AuditEvent, Client, Project, Task, Team, User, Workspace
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.guarded_actions import AuditActor
from tenantguard.services.tenancy.quarantine import (
    QuarantineAssignment,
    archive_quarantined,
    assign_quarantined,
    delete_quarantined,
    list_quarantined,
    quarantine_summary,
)
from tenantguard.tests.utils.seed import count_events, seed, tenant, tenant_id_of


QUARANTINE_ID = "t-quarantine"
ACTOR = AuditActor(actor_id="u-operator", actor_role="super_user", request_id="req-q")
DELETE_TOKEN = "DELETE_QUARANTINED_ROW"


async def _seed_quarantine() -> None:
    await seed(
        tenant(QUARANTINE_ID, slug="quarantine", status="inactive"),
        tenant("tenant-a"),
        tenant("tenant-b"),
        Workspace(id="ws-a", tenant_id="tenant-a", name="A"),
        Workspace(id="ws-b", tenant_id="tenant-b", name="B"),
        Project(id="p-a", tenant_id="tenant-a", workspace_id="ws-a", name="Alpha"),
        Project(id="p-q1", tenant_id=QUARANTINE_ID, name="Orphan Apollo"),
        Project(id="p-q2", tenant_id=QUARANTINE_ID, name="Orphan Borealis"),
        Task(id="t-q1", tenant_id=QUARANTINE_ID, title="Stray task"),
        User(id="u-q1", tenant_id=QUARANTINE_ID, email="stray@example.com", role="employee"),
    )


@pytest.mark.asyncio
async def test_summary_without_quarantine_tenant() -> None:
    async with SessionLocal() as session:
        summary = await quarantine_summary(session)
    assert summary["exists"] is False
    assert summary["total"] == 0
    assert summary["counts"] == {"projects": 0, "tasks": 0, "teams": 0, "users": 0}


@pytest.mark.asyncio
async def test_summary_counts_quarantined_rows() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        summary = await quarantine_summary(session)
    assert summary["quarantine_tenant_id"] == QUARANTINE_ID
    assert summary["counts"] == {"projects": 2, "tasks": 1, "teams": 0, "users": 1}
    assert summary["total"] == 4


@pytest.mark.asyncio
async def test_list_pages_and_filters_quarantined_rows() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        page = await list_quarantined(session, table="projects", page=1, limit=1)
        assert page["total"] == 2
        assert len(page["rows"]) == 1
        assert page["limit"] == 1

        filtered = await list_quarantined(session, table="projects", q="BOREALIS")
        assert [row["id"] for row in filtered["rows"]] == ["p-q2"]

        users = await list_quarantined(session, table="users")
        assert users["rows"][0]["email"] == "stray@example.com"

        with pytest.raises(QuarantineError) as exc_info:
            await list_quarantined(session, table="clients")
    assert exc_info.value.code == "INVALID_TABLE"


@pytest.mark.asyncio
async def test_list_caps_page_size() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        page = await list_quarantined(session, table="tasks", limit=10_000)
    assert page["limit"] == 100


@pytest.mark.asyncio
async def test_assign_moves_row_and_records_audit() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        result = await assign_quarantined(
            session,
            table="projects",
            row_id="p-q1",
            assignment=QuarantineAssignment(tenant_id="tenant-a", workspace_id="ws-a"),
            actor=ACTOR,
        )
    assert result["assigned"] == {"tenant_id": "tenant-a", "workspace_id": "ws-a"}
    assert await tenant_id_of(Project, "p-q1") == "tenant-a"

    async with SessionLocal() as session:
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "quarantine.assigned"))
        ).scalar_one()
    assert event.resource_id == "p-q1"
    assert event.tenant_id == "tenant-a"
    assert event.request_id == "req-q"
    assert event.metadata_json["from_tenant_id"] == QUARANTINE_ID


@pytest.mark.asyncio
async def test_assign_rejects_rows_outside_quarantine() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        with pytest.raises(QuarantineError) as exc_info:
            await assign_quarantined(
                session,
                table="projects",
                row_id="p-a",
                assignment=QuarantineAssignment(tenant_id="tenant-b"),
                actor=ACTOR,
            )
    assert exc_info.value.code == "NOT_FOUND"
    assert exc_info.value.status_code == 404
    assert await tenant_id_of(Project, "p-a") == "tenant-a"
    assert await count_events() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("table", "assignment", "code"),
    [
        ("projects", QuarantineAssignment(tenant_id=QUARANTINE_ID), "INVALID_TARGET"),
        ("projects", QuarantineAssignment(tenant_id="missing"), "TENANT_NOT_FOUND"),
        ("projects", QuarantineAssignment(tenant_id="tenant-a", workspace_id="ws-b"), "INVALID_WORKSPACE"),
        ("tasks", QuarantineAssignment(tenant_id="tenant-b", project_id="p-a"), "INVALID_PROJECT"),
    ],
)
async def test_assign_validates_target(table: str, assignment: QuarantineAssignment, code: str) -> None:
    await _seed_quarantine()
    row_id = "p-q1" if table == "projects" else "t-q1"
    async with SessionLocal() as session:
        with pytest.raises(QuarantineError) as exc_info:
            await assign_quarantined(session, table=table, row_id=row_id, assignment=assignment, actor=ACTOR)
    assert exc_info.value.code == code
    assert await count_events() == 0


@pytest.mark.asyncio
async def test_assign_requires_a_quarantine_tenant() -> None:
    await seed(tenant("tenant-a"))
    async with SessionLocal() as session:
        with pytest.raises(QuarantineError) as exc_info:
            await assign_quarantined(
                session,
                table="users",
                row_id="u-1",
                assignment=QuarantineAssignment(tenant_id="tenant-a"),
                actor=ACTOR,
            )
    assert exc_info.value.code == "NO_QUARANTINE_TENANT"


@pytest.mark.asyncio
async def test_assign_rejects_client_from_another_tenant() -> None:
    await _seed_quarantine()
    await seed(Client(id="client-b", tenant_id="tenant-b", name="B"))
    async with SessionLocal() as session:
        with pytest.raises(QuarantineError) as exc_info:
            await assign_quarantined(
                session,
                table="projects",
                row_id="p-q1",
                assignment=QuarantineAssignment(tenant_id="tenant-a", client_id="client-b"),
                actor=ACTOR,
            )
    assert exc_info.value.code == "INVALID_CLIENT"
    assert await tenant_id_of(Project, "p-q1") == QUARANTINE_ID

    async with SessionLocal() as session:
        await assign_quarantined(
            session,
            table="projects",
            row_id="p-q1",
            assignment=QuarantineAssignment(tenant_id="tenant-b", client_id="client-b"),
            actor=ACTOR,
        )
    assert await tenant_id_of(Project, "p-q1") == "tenant-b"


@pytest.mark.asyncio
async def test_archive_deactivates_quarantined_user() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        result = await archive_quarantined(session, table="users", row_id="u-q1", actor=ACTOR)
    assert result["archived"] is True

    async with SessionLocal() as session:
        user = await session.get(User, "u-q1")
        assert user.is_active is False
        assert user.tenant_id == QUARANTINE_ID
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "quarantine.archived"))
        ).scalar_one()
    assert event.tenant_id == QUARANTINE_ID
    assert event.resource_id == "u-q1"


@pytest.mark.asyncio
async def test_archive_is_a_no_op_for_other_tables() -> None:
    await _seed_quarantine()
    async with SessionLocal() as session:
        result = await archive_quarantined(session, table="projects", row_id="p-q1", actor=ACTOR)
        with pytest.raises(QuarantineError) as exc_info:
            await archive_quarantined(session, table="users", row_id="u-missing", actor=ACTOR)
    assert result["archived"] is False
    assert exc_info.value.status_code == 404
    assert await count_events() == 0


def _delete_enabled() -> Settings:
    return Settings(super_debug_delete_allowed=True)


async def _delete(table: str, row_id: str, **overrides) -> dict:
    params = {
        "confirm": DELETE_TOKEN,
        "confirm_phrase": DELETE_TOKEN,
        "actor": ACTOR,
        "settings": _delete_enabled(),
    }
    params.update(overrides)
    async with SessionLocal() as session:
        return await delete_quarantined(session, table=table, row_id=row_id, **params)


@pytest.mark.asyncio
async def test_delete_removes_row_and_audits_once() -> None:
    await _seed_quarantine()
    await seed(Team(id="team-q", tenant_id=QUARANTINE_ID, name="stray team"))
    result = await _delete("teams", "team-q")
    assert result == {"table": "teams", "id": "team-q", "deleted": True}

    async with SessionLocal() as session:
        assert await session.get(Team, "team-q") is None
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "quarantine.deleted"))
        ).scalar_one()
    assert event.tenant_id == QUARANTINE_ID
    assert event.metadata_json == {"action": "quarantine_delete", "table": "teams", "row_id": "team-q"}


@pytest.mark.asyncio
async def test_delete_checks_flag_then_header_then_phrase() -> None:
    await _seed_quarantine()
    with pytest.raises(GateDisabledError):
        await _delete("projects", "p-q2", settings=Settings())
    with pytest.raises(ConfirmationRequiredError):
        await _delete("projects", "p-q2", confirm="delete")
    with pytest.raises(QuarantineError) as exc_info:
        await _delete("projects", "p-q2", confirm_phrase=None)
    assert exc_info.value.code == "CONFIRMATION_PHRASE_MISMATCH"
    assert await tenant_id_of(Project, "p-q2") == QUARANTINE_ID
    assert await count_events() == 0


@pytest.mark.asyncio
async def test_delete_refuses_rows_with_dependents() -> None:
    await _seed_quarantine()
    await seed(
        Task(id="t-child", tenant_id=QUARANTINE_ID, project_id="p-q1", title="child"),
        Task(id="t-sub", tenant_id=QUARANTINE_ID, parent_task_id="t-q1", title="subtask"),
    )
    with pytest.raises(QuarantineError) as project_exc:
        await _delete("projects", "p-q1")
    with pytest.raises(QuarantineError) as task_exc:
        await _delete("tasks", "t-q1")
    assert project_exc.value.code == "HAS_DEPENDENT_TASKS"
    assert task_exc.value.code == "HAS_DEPENDENT_SUBTASKS"
    assert await tenant_id_of(Project, "p-q1") == QUARANTINE_ID
    assert await count_events() == 0

    # A row owned by a real tenant is never deletable through quarantine.
    with pytest.raises(QuarantineError) as outside_exc:
        await _delete("projects", "p-a")
    assert outside_exc.value.status_code == 404
