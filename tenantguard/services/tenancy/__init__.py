from __future__ import annotations

# Re-export the pure tenancy decision helpers for centralized imports.

from tenantguard.services.tenancy.enforcement import (
    MODE_OFF,
    MODE_SOFT,
    MODE_STRICT,
    WARN_HEADER,
    TenancyPolicy,
    classify,
    decide,
    get_enforcement_mode,
)
from tenantguard.services.tenancy.inference import (
    Inference,
    infer_project_tenant,
    infer_task_tenant,
    infer_team_tenant,
    infer_user_tenant,
)
from tenantguard.services.tenancy.reconciler import fetch_with_policy, list_with_policy, validate_ownership

__all__ = [
    "MODE_OFF",
    "MODE_SOFT",
    "MODE_STRICT",
    "WARN_HEADER",
    "TenancyPolicy",
    "classify",
    "decide",
    "get_enforcement_mode",
    "Inference",
    "infer_project_tenant",
    "infer_task_tenant",
    "infer_team_tenant",
    "infer_user_tenant",
    "fetch_with_policy",
    "list_with_policy",
    "validate_ownership",
]
