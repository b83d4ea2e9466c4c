from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantguard.core.errors import TenantGuardError
from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.guarded_actions import AuditActor
from tenantguard.services.tenancy.backfill import BACKFILL_MODES, execute_backfill


def _build_parser() -> argparse.ArgumentParser:
    # Apply mode honours the same flag and confirmation token as the admin route.
    parser = argparse.ArgumentParser(description="Infer and backfill missing tenant ids")
    parser.add_argument("--mode", choices=BACKFILL_MODES, default="dry_run", help="dry_run|apply")
    parser.add_argument(
        "--confirm",
        default=None,
        help="Confirmation token required for apply (APPLY_TENANTID_BACKFILL)",
    )
    parser.add_argument("--actor", default="backfill_tenant_ids", help="Actor id recorded on the audit event")
    return parser


async def _run(args: argparse.Namespace) -> int:
    actor = AuditActor(actor_id=args.actor, actor_role=None, actor_type="system")
    async with SessionLocal() as session:
        try:
            result = await execute_backfill(
                session,
                mode=args.mode,
                confirm=args.confirm,
                actor=actor,
            )
        except TenantGuardError as exc:
            print(f"error={type(exc).__name__} message={exc}", file=sys.stderr)
            return 2
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.total_errors else 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
