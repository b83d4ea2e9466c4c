from __future__ import annotations

import argparse
import asyncio
import json

from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.tenancy.integrity import run_integrity_checks


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print the tenant integrity report as JSON")
    parser.add_argument(
        "--fail-on-blockers",
        action="store_true",
        help="Exit non-zero when any blocker-severity issue is found",
    )
    return parser


async def _report() -> dict:
    async with SessionLocal() as session:
        report = await run_integrity_checks(session)
    return report.to_dict()


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    payload = asyncio.run(_report())
    print(json.dumps(payload, indent=2))
    if args.fail_on_blockers and payload["blocker_count"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
