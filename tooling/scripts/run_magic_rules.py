#!/usr/bin/env python3
"""Evaluate magic rules for a single paid order.

Intended usage: replaying a missed order-paid event or backfilling after a
rule was created.

Example:
    python tooling/scripts/run_magic_rules.py --organization org_123 --order 6f1c...

Use `--dry-run` to capture notifications in memory instead of writing them to
the outbox. Coupons, point grants and execution records are still persisted.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate magic rules for one order")
    parser.add_argument("--organization", required=True, help="Organization id that owns the order.")
    parser.add_argument("--order", required=True, help="Order id (UUID).")
    parser.add_argument(
        "--base-points",
        type=int,
        default=None,
        help="Affiliate points already awarded for the order (used by multiplier actions).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the in-memory notification enqueuer instead of the outbox.",
    )
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> list[dict[str, object]]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from merchant_api.db.session import async_session  # type: ignore import-position
    from merchant_api.services.magic_rules import MagicRuleOrchestrator  # type: ignore import-position
    from merchant_api.services.notifications import (  # type: ignore import-position
        InMemoryNotificationEnqueuer,
        NotificationEnqueuer,
    )

    async with async_session() as session:
        notifier: NotificationEnqueuer | None = None
        if args.dry_run:
            notifier = InMemoryNotificationEnqueuer()

        orchestrator = MagicRuleOrchestrator(session, notifier=notifier)
        results = await orchestrator.evaluate_rules_for_order(
            organization_id=args.organization,
            order_id=args.order,
            base_affiliate_points_awarded=args.base_points,
        )
        if isinstance(notifier, InMemoryNotificationEnqueuer):
            for request in notifier.requests:
                logger.info(
                    "Captured notification",
                    type=request.type,
                    channels=[channel.value for channel in request.channels],
                    subject=request.payload.subject,
                )
        return [result.model_dump(by_alias=True) for result in results]


def main() -> int:
    args = parse_args()
    results = asyncio.run(_run(args))
    fired = next((result["ruleId"] for result in results if result["matched"]), None)
    logger.success(
        "Magic rule evaluation completed",
        organization_id=args.organization,
        order_id=args.order,
        evaluated=len(results),
        fired_rule_id=fired,
        dry_run=args.dry_run,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
