"""Pure tenant inference rules used by the backfill driver.

Every rule takes pre-loaded lookup maps (id -> tenant id) and returns an
:class:`Inference`. Nothing here touches the database, so the rules are tested directly
and the backfill engine stays a thin driver around them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Mapping

from tenantguard.domain.models import ROLE_SUPER_USER


InferenceSource = Literal[
    "workspace",
    "client",
    "createdBy",
    "project",
    "inferred",
    "ambiguous",
    "no_associations",
    "multiple_tenants",
    "super_user",
]

TenantMap = Mapping[str, str | None]


@dataclass(frozen=True)
class Inference:
    tenant_id: str | None
    source: InferenceSource

    @property
    def resolved(self) -> bool:
        return self.tenant_id is not None

    @property
    def skipped(self) -> bool:
        # Fixed-point rows are neither written nor quarantined.
        return self.source == ROLE_SUPER_USER


def _lookup(mapping: TenantMap, key: str | None, excluded: str | None) -> str | None:
    if not key:
        return None
    tenant_id = mapping.get(key)
    # The quarantine sink never propagates ownership to dependent rows.
    if tenant_id is None or tenant_id == excluded:
        return None
    return tenant_id


def _first_candidate(
    candidates: Iterable[tuple[InferenceSource, TenantMap, str | None]],
    excluded: str | None,
) -> Inference:
    for source, mapping, key in candidates:
        tenant_id = _lookup(mapping, key, excluded)
        if tenant_id is not None:
            return Inference(tenant_id=tenant_id, source=source)
    return Inference(tenant_id=None, source="ambiguous")


def infer_project_tenant(
    *,
    workspace_id: str | None,
    client_id: str | None,
    created_by: str | None,
    workspace_tenants: TenantMap,
    client_tenants: TenantMap,
    user_tenants: TenantMap,
    quarantine_tenant_id: str | None = None,
) -> Inference:
    # Precedence: workspace, then client, then creator.
    return _first_candidate(
        [
            ("workspace", workspace_tenants, workspace_id),
            ("client", client_tenants, client_id),
            ("createdBy", user_tenants, created_by),
        ],
        quarantine_tenant_id,
    )


def infer_task_tenant(
    *,
    project_id: str | None,
    created_by: str | None,
    project_tenants: TenantMap,
    user_tenants: TenantMap,
    quarantine_tenant_id: str | None = None,
) -> Inference:
    # project_tenants must already reflect the project stage of the same run.
    return _first_candidate(
        [
            ("project", project_tenants, project_id),
            ("createdBy", user_tenants, created_by),
        ],
        quarantine_tenant_id,
    )


def infer_team_tenant(
    *,
    workspace_id: str | None,
    workspace_tenants: TenantMap,
    quarantine_tenant_id: str | None = None,
) -> Inference:
    return _first_candidate([("workspace", workspace_tenants, workspace_id)], quarantine_tenant_id)


def infer_user_tenant(
    *,
    role: str | None,
    membership_tenants: Iterable[str | None],
    invitation_tenants: Iterable[str | None],
    created_project_tenants: Iterable[str | None],
    quarantine_tenant_id: str | None = None,
) -> Inference:
    """Collect every tenant a user is associated with and require exactly one.

    A user linked to two tenants resolves to ``multiple_tenants`` and is never assigned
    to either one.
    """
    if role == ROLE_SUPER_USER:
        return Inference(tenant_id=None, source="super_user")

    candidates: set[str] = set()
    for group in (membership_tenants, invitation_tenants, created_project_tenants):
        for tenant_id in group:
            if tenant_id and tenant_id != quarantine_tenant_id:
                candidates.add(tenant_id)

    if len(candidates) == 1:
        return Inference(tenant_id=next(iter(candidates)), source="inferred")
    if not candidates:
        return Inference(tenant_id=None, source="no_associations")
    return Inference(tenant_id=None, source="multiple_tenants")
