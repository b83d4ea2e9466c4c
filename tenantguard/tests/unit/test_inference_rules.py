from __future__ import annotations

from tenantguard.services.tenancy.inference import (
    infer_project_tenant,
    infer_task_tenant,
    infer_team_tenant,
    infer_user_tenant,
)


WORKSPACES = {"ws-a": "tenant-a", "ws-legacy": None}
CLIENTS = {"client-c": "tenant-c"}
USERS = {"user-b": "tenant-b", "user-none": None}


def test_project_prefers_workspace_over_client_and_creator() -> None:
    inference = infer_project_tenant(
        workspace_id="ws-a",
        client_id="client-c",
        created_by="user-b",
        workspace_tenants=WORKSPACES,
        client_tenants=CLIENTS,
        user_tenants=USERS,
    )
    assert inference.tenant_id == "tenant-a"
    assert inference.source == "workspace"


def test_project_falls_back_to_client_then_creator() -> None:
    via_client = infer_project_tenant(
        workspace_id="ws-legacy",
        client_id="client-c",
        created_by="user-b",
        workspace_tenants=WORKSPACES,
        client_tenants=CLIENTS,
        user_tenants=USERS,
    )
    assert (via_client.tenant_id, via_client.source) == ("tenant-c", "client")

    via_creator = infer_project_tenant(
        workspace_id=None,
        client_id=None,
        created_by="user-b",
        workspace_tenants=WORKSPACES,
        client_tenants=CLIENTS,
        user_tenants=USERS,
    )
    assert (via_creator.tenant_id, via_creator.source) == ("tenant-b", "createdBy")


def test_project_without_any_resolvable_reference_is_ambiguous() -> None:
    inference = infer_project_tenant(
        workspace_id="ws-missing",
        client_id=None,
        created_by="user-none",
        workspace_tenants=WORKSPACES,
        client_tenants=CLIENTS,
        user_tenants=USERS,
    )
    assert inference.tenant_id is None
    assert inference.source == "ambiguous"
    assert inference.resolved is False


def test_quarantine_tenant_is_never_an_inference_source() -> None:
    inference = infer_project_tenant(
        workspace_id="ws-q",
        client_id=None,
        created_by="user-b",
        workspace_tenants={"ws-q": "quarantine-id"},
        client_tenants={},
        user_tenants=USERS,
        quarantine_tenant_id="quarantine-id",
    )
    assert (inference.tenant_id, inference.source) == ("tenant-b", "createdBy")


def test_task_uses_project_then_creator() -> None:
    projects = {"p1": "tenant-a", "p-legacy": None}
    via_project = infer_task_tenant(
        project_id="p1",
        created_by="user-b",
        project_tenants=projects,
        user_tenants=USERS,
    )
    assert (via_project.tenant_id, via_project.source) == ("tenant-a", "project")

    personal = infer_task_tenant(
        project_id=None,
        created_by="user-b",
        project_tenants=projects,
        user_tenants=USERS,
    )
    assert (personal.tenant_id, personal.source) == ("tenant-b", "createdBy")

    orphan = infer_task_tenant(
        project_id="p-legacy",
        created_by="user-none",
        project_tenants=projects,
        user_tenants=USERS,
    )
    assert orphan.tenant_id is None


def test_team_has_no_fallback_beyond_workspace() -> None:
    assert infer_team_tenant(workspace_id="ws-a", workspace_tenants=WORKSPACES).tenant_id == "tenant-a"
    assert infer_team_tenant(workspace_id=None, workspace_tenants=WORKSPACES).source == "ambiguous"


def test_user_with_single_tenant_is_inferred() -> None:
    inference = infer_user_tenant(
        role="employee",
        membership_tenants=["tenant-a", "tenant-a"],
        invitation_tenants=["tenant-a"],
        created_project_tenants=[None],
    )
    assert (inference.tenant_id, inference.source) == ("tenant-a", "inferred")


def test_user_with_membership_and_foreign_invitation_is_ambiguous() -> None:
    inference = infer_user_tenant(
        role="employee",
        membership_tenants=["tenant-a"],
        invitation_tenants=["tenant-b"],
        created_project_tenants=[],
    )
    assert inference.tenant_id is None
    assert inference.source == "multiple_tenants"


def test_user_without_associations_is_ambiguous() -> None:
    inference = infer_user_tenant(
        role="client",
        membership_tenants=[],
        invitation_tenants=[],
        created_project_tenants=["quarantine-id"],
        quarantine_tenant_id="quarantine-id",
    )
    assert inference.source == "no_associations"


def test_super_user_is_a_fixed_point() -> None:
    inference = infer_user_tenant(
        role="super_user",
        membership_tenants=["tenant-a"],
        invitation_tenants=[],
        created_project_tenants=[],
    )
    assert inference.tenant_id is None
    assert inference.skipped is True
