"""
Subscription population sync job.

Pulls every candidate user's subscriptions from Stripe into the local
cache and, with --sync-roles, realigns billing roles with the result.
Ensures local state stays accurate even if webhooks are missed.

Usage:
    python -m src.jobs.sync_subscriptions [--days=2] [--user=ID]
        [--dry-run] [--sync-roles] [--batch-size=50]

Exit codes:
    0  completed (per-user errors are reported in the summary)
    1  fatal error (unknown --user, database or billing not configured)
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from src.config.subscription import get_subscription_settings
from src.database.session import session_scope
from src.integrations.stripe.billing_client import get_billing_client
from src.services.subscription_sync_service import SubscriptionSyncService, SyncResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sync-subscriptions",
        description="Synchronize local subscriptions with Stripe",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=2,
        help="Only users updated or synced in the last N days; 0 for all (default: 2)",
    )
    parser.add_argument("--user", dest="user_id", help="Sync a single user by ID")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without writing anything",
    )
    parser.add_argument(
        "--sync-roles",
        action="store_true",
        help="Also update billing roles from the synced subscriptions",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=50,
        help="Users per chunk (default: 50)",
    )
    return parser


async def run_subscription_sync(
    days: int = 2,
    user_id: Optional[str] = None,
    dry_run: bool = False,
    sync_roles: bool = False,
    batch_size: int = 50,
    stop_event: Optional[asyncio.Event] = None,
    deadline: Optional[float] = None,
) -> SyncResult:
    """Run one population sync with its own session and gateway client."""
    settings = get_subscription_settings()

    with session_scope() as db:
        async with get_billing_client(settings) as gateway:
            service = SubscriptionSyncService(db, gateway, settings=settings)
            return await service.sync_population(
                window_days=days,
                batch_size=batch_size,
                user_id=user_id,
                update_roles=sync_roles,
                dry_run=dry_run,
                stop_event=stop_event,
                deadline=deadline,
            )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for running the sync from the command line."""
    args = build_parser().parse_args(argv)

    if args.batch_size < 1:
        print("--batch-size must be at least 1", file=sys.stderr)
        return 1

    if args.dry_run:
        print("DRY RUN - no changes will be written")

    try:
        result = asyncio.run(run_subscription_sync(
            days=args.days,
            user_id=args.user_id,
            dry_run=args.dry_run,
            sync_roles=args.sync_roles,
            batch_size=args.batch_size,
        ))
    except Exception as e:
        logger.exception("Subscription sync failed", extra={"error": str(e)})
        print(f"Subscription sync failed: {e}", file=sys.stderr)
        return 1

    summary = result.to_dict()
    print(f"Subscription sync completed: {summary}")
    if result.errors:
        print(f"{result.errors} user(s) failed; see logs for details")
    return 0


if __name__ == "__main__":
    sys.exit(main())
