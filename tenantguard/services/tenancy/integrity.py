"""Read-only cross-entity tenant consistency checks.

Each check issues one ``COUNT`` and one bounded sample query, so report size stays
constant regardless of how much data is inconsistent. Nothing here writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Literal

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import SAMPLE_ID_LIMIT
from tenantguard.domain.models import ROLE_SUPER_USER, Client, Project, Task, Team, User, Workspace


logger = logging.getLogger(__name__)

Severity = Literal["info", "warn", "blocker"]

SEVERITY_INFO: Severity = "info"
SEVERITY_WARN: Severity = "warn"
SEVERITY_BLOCKER: Severity = "blocker"


@dataclass(frozen=True)
class IntegrityIssue:
    code: str
    severity: Severity
    count: int
    sample_ids: list[str]
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity,
            "count": self.count,
            "sample_ids": list(self.sample_ids),
            "description": self.description,
        }


@dataclass
class IntegrityReport:
    """Outcome of one integrity pass.

    Totals are row counts: each issue contributes its ``count`` to its severity bucket.
    ``issue_entries`` is the number of checks that found anything.
    """

    issues: list[IntegrityIssue] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def _count(self, severity: Severity) -> int:
        return sum(issue.count for issue in self.issues if issue.severity == severity)

    @property
    def total_issues(self) -> int:
        return sum(issue.count for issue in self.issues)

    @property
    def issue_entries(self) -> int:
        return len(self.issues)

    @property
    def blocker_count(self) -> int:
        return self._count(SEVERITY_BLOCKER)

    @property
    def warn_count(self) -> int:
        return self._count(SEVERITY_WARN)

    @property
    def info_count(self) -> int:
        return self._count(SEVERITY_INFO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issues": [issue.to_dict() for issue in self.issues],
            "total_issues": self.total_issues,
            "issue_entries": self.issue_entries,
            "blocker_count": self.blocker_count,
            "warn_count": self.warn_count,
            "info_count": self.info_count,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass(frozen=True)
class _Check:
    code: str
    severity: Severity
    description: str
    # Selects one id column; the checker wraps it for the count and the sample.
    ids: Select


def _checks() -> list[_Check]:
    return [
        _Check(
            code="TASK_PROJECT_TENANT_MISMATCH",
            severity=SEVERITY_BLOCKER,
            description="Tasks whose tenant differs from their project's tenant",
            ids=select(Task.id)
            .join(Project, Project.id == Task.project_id)
            .where(
                Task.tenant_id.is_not(None),
                Project.tenant_id.is_not(None),
                Task.tenant_id != Project.tenant_id,
            ),
        ),
        _Check(
            code="PROJECT_CLIENT_TENANT_MISMATCH",
            severity=SEVERITY_BLOCKER,
            description="Projects whose tenant differs from their client's tenant",
            ids=select(Project.id)
            .join(Client, Client.id == Project.client_id)
            .where(
                Project.tenant_id.is_not(None),
                Client.tenant_id.is_not(None),
                Project.tenant_id != Client.tenant_id,
            ),
        ),
        _Check(
            code="TEAM_WORKSPACE_TENANT_MISMATCH",
            severity=SEVERITY_BLOCKER,
            description="Teams whose tenant differs from their workspace's tenant",
            ids=select(Team.id)
            .join(Workspace, Workspace.id == Team.workspace_id)
            .where(
                Team.tenant_id.is_not(None),
                Workspace.tenant_id.is_not(None),
                Team.tenant_id != Workspace.tenant_id,
            ),
        ),
        _Check(
            code="USERS_MISSING_TENANT",
            severity=SEVERITY_WARN,
            description="Non-super users without a tenant id",
            ids=select(User.id).where(User.tenant_id.is_(None), User.role != ROLE_SUPER_USER),
        ),
        _Check(
            code="PROJECTS_MISSING_WORKSPACE",
            severity=SEVERITY_WARN,
            description="Projects without a workspace",
            ids=select(Project.id).where(Project.workspace_id.is_(None)),
        ),
        _Check(
            code="MULTIPLE_PRIMARY_WORKSPACES",
            severity=SEVERITY_WARN,
            description="Tenants with more than one primary workspace (sample ids are tenant ids)",
            ids=select(Workspace.tenant_id)
            .where(Workspace.is_primary.is_(True), Workspace.tenant_id.is_not(None))
            .group_by(Workspace.tenant_id)
            .having(func.count(Workspace.id) > 1),
        ),
    ]


async def _run_check(session: AsyncSession, check: _Check) -> IntegrityIssue | None:
    subquery = check.ids.subquery()
    count = int((await session.execute(select(func.count()).select_from(subquery))).scalar_one())
    if count == 0:
        return None
    id_column = subquery.c[0]
    sample = await session.execute(select(id_column).order_by(id_column).limit(SAMPLE_ID_LIMIT))
    return IntegrityIssue(
        code=check.code,
        severity=check.severity,
        count=count,
        sample_ids=[str(value) for value in sample.scalars().all()],
        description=check.description,
    )


async def run_integrity_checks(session: AsyncSession) -> IntegrityReport:
    report = IntegrityReport()
    for check in _checks():
        issue = await _run_check(session, check)
        if issue is not None:
            report.issues.append(issue)
    logger.info(
        "integrity_checks_completed entries=%s total=%s blockers=%s warns=%s",
        report.issue_entries,
        report.total_issues,
        report.blocker_count,
        report.warn_count,
    )
    return report
