from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import asdict, dataclass
from typing import Any, Deque

from tenantguard.core.config import get_settings


@dataclass(frozen=True)
class TenancyWarningRecord:
    ts: float
    route: str
    method: str
    reason: str
    mode: str
    resource_type: str
    resource_id: str | None
    effective_tenant_id: str | None
    actual_tenant_id: str | None


_warnings: Deque[TenancyWarningRecord] | None = None


def _buffer() -> Deque[TenancyWarningRecord]:
    # Size the buffer from settings on first use so tests can shrink it.
    global _warnings
    if _warnings is None:
        _warnings = deque(maxlen=max(1, get_settings().tenancy_warn_buffer_size))
    return _warnings


def record_warning(
    *,
    route: str,
    method: str,
    reason: str,
    mode: str,
    resource_type: str,
    resource_id: str | None,
    effective_tenant_id: str | None,
    actual_tenant_id: str | None,
) -> None:
    # Keep recent tenancy violations in memory for rollout dashboards.
    _buffer().append(
        TenancyWarningRecord(
            ts=time.time(),
            route=route,
            method=method,
            reason=reason,
            mode=mode,
            resource_type=resource_type,
            resource_id=resource_id,
            effective_tenant_id=effective_tenant_id,
            actual_tenant_id=actual_tenant_id,
        )
    )


def warning_stats(*, window_s: int | None = None, recent_limit: int = 20) -> dict[str, Any]:
    # Aggregate warnings by reason and route over an optional trailing window.
    records = list(_buffer())
    if window_s is not None:
        cutoff = time.time() - window_s
        records = [record for record in records if record.ts >= cutoff]
    by_reason = Counter(record.reason for record in records)
    by_route = Counter(f"{record.method}:{record.route}" for record in records)
    recent = [asdict(record) for record in records[-recent_limit:]] if recent_limit > 0 else []
    return {
        "total": len(records),
        "by_reason": dict(by_reason),
        "by_route": dict(by_route.most_common(10)),
        "recent": list(reversed(recent)),
    }


def reset_warnings() -> None:
    global _warnings
    _warnings = None
