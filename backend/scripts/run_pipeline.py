#!/usr/bin/env python3
"""
Run one pipeline stage from the command line (same code paths as /api/cron/*).

Run from backend/:
  python -m scripts.run_pipeline sync [--tenant <uuid>] [--platform tiktok]
  python -m scripts.run_pipeline evaluate [--tenant <uuid>] [--date 2026-10-19]
  python -m scripts.run_pipeline execute <recommendation-id> [<recommendation-id> ...]
  python -m scripts.run_pipeline reconcile [--stale-minutes 30]
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import date, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO)


async def main(args: argparse.Namespace) -> int:
    from autopilot.context import ExecutionContext
    from autopilot.database import async_session
    from autopilot.services.collector import collect_metrics
    from autopilot.services.evaluator import active_rule_tenants, evaluate_tenants
    from autopilot.services.gateway import execute_batch, reconcile_stale_executions

    ctx = ExecutionContext.service("system:cli")

    if args.command == "sync":
        async with async_session() as db:
            result = await collect_metrics(db, tenant_id=args.tenant, platform=args.platform)
    elif args.command == "evaluate":
        if args.tenant:
            tenant_ids = [args.tenant]
        else:
            async with async_session() as db:
                tenant_ids = await active_rule_tenants(db)
        result = await evaluate_tenants(async_session, tenant_ids, reference_date=args.date)
    elif args.command == "execute":
        result = await execute_batch(async_session, args.recommendation_ids, ctx)
    else:
        stale_after = timedelta(minutes=args.stale_minutes) if args.stale_minutes else None
        async with async_session() as db:
            result = await reconcile_stale_executions(db, stale_after)

    print(json.dumps(result, indent=2, default=str))
    if args.command == "execute" and result["failed"]:
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ads Autopilot pipeline runner")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Collect today's metrics from active connections")
    sync.add_argument("--tenant", type=uuid.UUID)
    sync.add_argument("--platform", choices=["tiktok", "meta", "google", "shopee"])

    evaluate = sub.add_parser("evaluate", help="Evaluate rules into recommendations")
    evaluate.add_argument("--tenant", type=uuid.UUID)
    evaluate.add_argument("--date", type=date.fromisoformat, help="Reference date (default: today UTC)")

    execute = sub.add_parser("execute", help="Execute approved recommendations")
    execute.add_argument("recommendation_ids", nargs="+", type=uuid.UUID)

    reconcile = sub.add_parser("reconcile", help="Fail recommendations stuck in executing")
    reconcile.add_argument("--stale-minutes", type=int)

    return parser


if __name__ == "__main__":
    sys.exit(asyncio.run(main(build_parser().parse_args())))
