"""Tenancy enforcement mode and the access decision table.

The mode is a process-wide setting (``TENANCY_ENFORCEMENT``). Request handlers resolve it
once into a :class:`TenancyPolicy` and pass that policy to every reconciler call, so a
single request can never observe two different modes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Literal

from starlette.responses import Response

from tenantguard.core.config import Settings, get_settings
from tenantguard.services.tenancy import warning_tracker


logger = logging.getLogger(__name__)

EnforcementMode = Literal["off", "soft", "strict"]
TenancyReason = Literal["ok", "legacy-null-tenant", "cross-tenant-mismatch"]

MODE_OFF: EnforcementMode = "off"
MODE_SOFT: EnforcementMode = "soft"
MODE_STRICT: EnforcementMode = "strict"
# Invalid or unset configuration resolves here.
DEFAULT_ENFORCEMENT_MODE: EnforcementMode = MODE_SOFT
ENFORCEMENT_MODES: tuple[EnforcementMode, ...] = (MODE_OFF, MODE_SOFT, MODE_STRICT)

REASON_OK: TenancyReason = "ok"
REASON_LEGACY_NULL_TENANT: TenancyReason = "legacy-null-tenant"
REASON_CROSS_TENANT_MISMATCH: TenancyReason = "cross-tenant-mismatch"

WARN_HEADER = "X-Tenancy-Warn"
# Wire codes carried by the warning header.
WARN_CODE_MISSING_TENANT = "missing-tenantId"
WARN_CODE_MISMATCH = "mismatch"
_HEADER_CODES: dict[TenancyReason, str] = {
    REASON_LEGACY_NULL_TENANT: WARN_CODE_MISSING_TENANT,
    REASON_CROSS_TENANT_MISMATCH: WARN_CODE_MISMATCH,
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    warn: bool
    reason: TenancyReason

    @property
    def header_code(self) -> str | None:
        return _HEADER_CODES.get(self.reason)


def _allow(reason: TenancyReason, *, warn: bool = False) -> AccessDecision:
    return AccessDecision(allowed=True, warn=warn, reason=reason)


def _block(reason: TenancyReason) -> AccessDecision:
    return AccessDecision(allowed=False, warn=True, reason=reason)


_DECISION_TABLE: dict[tuple[EnforcementMode, TenancyReason], AccessDecision] = {
    (MODE_OFF, REASON_OK): _allow(REASON_OK),
    (MODE_OFF, REASON_LEGACY_NULL_TENANT): _allow(REASON_LEGACY_NULL_TENANT),
    (MODE_OFF, REASON_CROSS_TENANT_MISMATCH): _allow(REASON_CROSS_TENANT_MISMATCH),
    (MODE_SOFT, REASON_OK): _allow(REASON_OK),
    (MODE_SOFT, REASON_LEGACY_NULL_TENANT): _allow(REASON_LEGACY_NULL_TENANT, warn=True),
    (MODE_SOFT, REASON_CROSS_TENANT_MISMATCH): _allow(REASON_CROSS_TENANT_MISMATCH, warn=True),
    (MODE_STRICT, REASON_OK): _allow(REASON_OK),
    # Legacy rows stay reachable in strict mode.
    (MODE_STRICT, REASON_LEGACY_NULL_TENANT): _allow(REASON_LEGACY_NULL_TENANT, warn=True),
    (MODE_STRICT, REASON_CROSS_TENANT_MISMATCH): _block(REASON_CROSS_TENANT_MISMATCH),
}


def resolve_mode(raw: str | None) -> EnforcementMode:
    # Parse case-insensitively; anything unrecognized falls back to the default.
    normalized = (raw or "").strip().lower()
    for mode in ENFORCEMENT_MODES:
        if normalized == mode:
            return mode
    if normalized:
        logger.warning(
            "tenancy_mode_invalid value=%s fallback=%s", raw, DEFAULT_ENFORCEMENT_MODE
        )
    return DEFAULT_ENFORCEMENT_MODE


def get_enforcement_mode(settings: Settings | None = None) -> EnforcementMode:
    resolved = settings or get_settings()
    return resolve_mode(resolved.tenancy_enforcement)


def effective_tenant_id(principal: Any) -> str | None:
    # Principals without a tenant (platform operators, unauthenticated calls) yield None.
    tenant_id = getattr(principal, "tenant_id", None)
    return tenant_id or None


def classify(resource_tenant_id: str | None, effective: str | None) -> TenancyReason:
    if resource_tenant_id is None:
        return REASON_LEGACY_NULL_TENANT
    if resource_tenant_id != effective:
        return REASON_CROSS_TENANT_MISMATCH
    return REASON_OK


def decide(mode: EnforcementMode, reason: TenancyReason) -> AccessDecision:
    return _DECISION_TABLE[(mode, reason)]


@dataclass
class TenancyPolicy:
    """Per-request view of the enforcement mode plus the warnings it raised."""

    mode: EnforcementMode
    effective_tenant_id: str | None
    route: str = "internal"
    method: str = "-"
    warn_codes: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(
        cls,
        *,
        effective_tenant_id: str | None,
        route: str = "internal",
        method: str = "-",
        settings: Settings | None = None,
    ) -> "TenancyPolicy":
        return cls(
            mode=get_enforcement_mode(settings),
            effective_tenant_id=effective_tenant_id,
            route=route,
            method=method,
        )

    def evaluate(
        self,
        *,
        resource_type: str,
        resource_id: str | None,
        resource_tenant_id: str | None,
    ) -> AccessDecision:
        reason = classify(resource_tenant_id, self.effective_tenant_id)
        decision = decide(self.mode, reason)
        if decision.warn:
            self.signal(
                decision,
                resource_type=resource_type,
                resource_id=resource_id,
                actual_tenant_id=resource_tenant_id,
            )
        return decision

    def signal(
        self,
        decision: AccessDecision,
        *,
        resource_type: str,
        resource_id: str | None,
        actual_tenant_id: str | None,
    ) -> None:
        # Surface every non-ok decision regardless of allow/block; off mode stays silent.
        if self.mode == MODE_OFF or decision.header_code is None:
            return
        logger.warning(
            "tenancy_warn mode=%s reason=%s allowed=%s route=%s method=%s resource_type=%s "
            "resource_id=%s effective_tenant_id=%s actual_tenant_id=%s",
            self.mode,
            decision.header_code,
            decision.allowed,
            self.route,
            self.method,
            resource_type,
            resource_id,
            self.effective_tenant_id,
            actual_tenant_id,
        )
        warning_tracker.record_warning(
            route=self.route,
            method=self.method,
            reason=decision.header_code,
            mode=self.mode,
            resource_type=resource_type,
            resource_id=resource_id,
            effective_tenant_id=self.effective_tenant_id,
            actual_tenant_id=actual_tenant_id,
        )
        if decision.header_code not in self.warn_codes:
            self.warn_codes.append(decision.header_code)

    @property
    def warn_header(self) -> str | None:
        if not self.warn_codes:
            return None
        return "; ".join(self.warn_codes)

    def apply_headers(self, response: Response) -> None:
        header = self.warn_header
        if header:
            response.headers[WARN_HEADER] = header
