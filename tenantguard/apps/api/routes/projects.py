from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_tenancy_policy
from tenantguard.apps.api.openapi import TENANT_ROUTE_RESPONSES
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.domain.models import Project, Task
from tenantguard.persistence.repos import projects as projects_repo
from tenantguard.services.tenancy.enforcement import WARN_HEADER, TenancyPolicy
from tenantguard.services.tenancy.reconciler import (
    fetch_with_policy,
    list_with_policy,
    validate_ownership,
)


router = APIRouter(tags=["projects"], responses=TENANT_ROUTE_RESPONSES)


class ProjectResponse(BaseModel):
    id: str
    tenant_id: str | None
    workspace_id: str | None
    client_id: str | None
    created_by: str | None
    name: str
    status: str
    created_at: datetime | None


class TaskResponse(BaseModel):
    id: str
    tenant_id: str | None
    project_id: str | None
    created_by: str | None
    title: str
    status: str
    created_at: datetime | None


class ProjectUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    status: str | None = Field(default=None, min_length=1, max_length=50)


class TaskUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    status: str | None = Field(default=None, min_length=1, max_length=50)


def _project_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        tenant_id=project.tenant_id,
        workspace_id=project.workspace_id,
        client_id=project.client_id,
        created_by=project.created_by,
        name=project.name,
        status=project.status,
        created_at=project.created_at,
    )


def _task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        tenant_id=task.tenant_id,
        project_id=task.project_id,
        created_by=task.created_by,
        title=task.title,
        status=task.status,
        created_at=task.created_at,
    )


def _project_sort_key(project: Project) -> tuple[datetime, str]:
    # Mirrors the repository ORDER BY created_at, id.
    return (project.created_at or datetime.min, project.id)


def _warn_headers(policy: TenancyPolicy) -> dict[str, str] | None:
    # Error responses bypass the injected Response, so carry the warning explicitly.
    header = policy.warn_header
    return {WARN_HEADER: header} if header else None


def _not_found(resource: str, policy: TenancyPolicy) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": f"{resource} not found"},
        headers=_warn_headers(policy),
    )


def _tenancy_forbidden(resource: str, policy: TenancyPolicy) -> HTTPException:
    # Writes target a row known to exist; reads mask the same case as 404.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "TENANCY_FORBIDDEN", "message": f"{resource} belongs to another tenant"},
        headers=_warn_headers(policy),
    )


@router.get("/projects", response_model=SuccessEnvelope[list[ProjectResponse]] | list[ProjectResponse])
async def list_projects(
    request: Request,
    response: Response,
    workspace_id: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    projects = await list_with_policy(
        policy,
        resource_type="project",
        scoped_fetch=lambda: projects_repo.list_projects_scoped(
            db, tenant_id=policy.effective_tenant_id, workspace_id=workspace_id, limit=limit
        ),
        legacy_fetch=lambda cap: projects_repo.list_projects_legacy(
            db, workspace_id=workspace_id, limit=cap
        ),
        foreign_fetch=lambda cap: projects_repo.list_projects_foreign(
            db, tenant_id=policy.effective_tenant_id, workspace_id=workspace_id, limit=cap
        ),
        unscoped_fetch=lambda: projects_repo.list_projects_unscoped(
            db, workspace_id=workspace_id, limit=limit
        ),
        limit=limit,
        sort_key=_project_sort_key,
    )
    policy.apply_headers(response)
    return success_response(request=request, data=[_project_response(project) for project in projects])


@router.get("/projects/{project_id}", response_model=SuccessEnvelope[ProjectResponse] | ProjectResponse)
async def get_project(
    project_id: str,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    project = await fetch_with_policy(
        policy,
        resource_type="project",
        resource_id=project_id,
        scoped_fetch=lambda: projects_repo.get_project_scoped(
            db, tenant_id=policy.effective_tenant_id, project_id=project_id
        ),
        unscoped_fetch=lambda: projects_repo.get_project_unscoped(db, project_id=project_id),
    )
    policy.apply_headers(response)
    if project is None:
        raise _not_found("Project", policy)
    return success_response(request=request, data=_project_response(project))


async def _load_project_for_write(
    db: AsyncSession, policy: TenancyPolicy, project_id: str
) -> Project:
    project = await projects_repo.get_project_unscoped(db, project_id=project_id)
    if project is None:
        raise _not_found("Project", policy)
    if not validate_ownership(policy, resource_type="project", resource=project):
        raise _tenancy_forbidden("Project", policy)
    return project


@router.patch("/projects/{project_id}", response_model=SuccessEnvelope[ProjectResponse] | ProjectResponse)
async def update_project(
    project_id: str,
    payload: ProjectUpdateRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    project = await _load_project_for_write(db, policy, project_id)
    for field_name, value in payload.model_dump(exclude_none=True).items():
        setattr(project, field_name, value)
    await db.commit()
    policy.apply_headers(response)
    return success_response(request=request, data=_project_response(project))


@router.delete("/projects/{project_id}", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def delete_project(
    project_id: str,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    project = await _load_project_for_write(db, policy, project_id)
    try:
        await db.delete(project)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "PROJECT_HAS_DEPENDENTS", "message": "Project still has tasks"},
        ) from exc
    policy.apply_headers(response)
    return success_response(request=request, data={"id": project_id, "deleted": True})


@router.get("/tasks/{task_id}", response_model=SuccessEnvelope[TaskResponse] | TaskResponse)
async def get_task(
    task_id: str,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    task = await fetch_with_policy(
        policy,
        resource_type="task",
        resource_id=task_id,
        scoped_fetch=lambda: projects_repo.get_task_scoped(
            db, tenant_id=policy.effective_tenant_id, task_id=task_id
        ),
        unscoped_fetch=lambda: projects_repo.get_task_unscoped(db, task_id=task_id),
    )
    policy.apply_headers(response)
    if task is None:
        raise _not_found("Task", policy)
    return success_response(request=request, data=_task_response(task))


@router.patch("/tasks/{task_id}", response_model=SuccessEnvelope[TaskResponse] | TaskResponse)
async def update_task(
    task_id: str,
    payload: TaskUpdateRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    policy: TenancyPolicy = Depends(get_tenancy_policy),
) -> Any:
    task = await projects_repo.get_task_unscoped(db, task_id=task_id)
    if task is None:
        raise _not_found("Task", policy)
    if not validate_ownership(policy, resource_type="task", resource=task):
        raise _tenancy_forbidden("Task", policy)
    for field_name, value in payload.model_dump(exclude_none=True).items():
        setattr(task, field_name, value)
    await db.commit()
    policy.apply_headers(response)
    return success_response(request=request, data=_task_response(task))
