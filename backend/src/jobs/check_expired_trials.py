"""
Expired trial sweep job.

Downgrades users whose local trial has ended to the free role, unless
they have since started paying.

Usage:
    python -m src.jobs.check_expired_trials [--dry-run] [--user=ID]

Exit codes:
    0  completed (per-user errors are reported in the summary)
    1  fatal error (unknown --user, database not configured)
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from src.config.subscription import get_subscription_settings
from src.database.session import session_scope
from src.integrations.stripe.billing_client import get_billing_client
from src.services.entitlement_resolver import EntitlementResolver
from src.services.trial_service import TrialLifecycleManager, TrialSweepResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="check-expired-trials",
        description="Downgrade users whose trial period has ended",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show which users would be downgraded without changing roles",
    )
    parser.add_argument("--user", dest="user_id", help="Check a single user by ID")
    return parser


async def run_trial_sweep(
    dry_run: bool = False,
    user_id: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
    deadline: Optional[float] = None,
) -> TrialSweepResult:
    """
    Run one sweep with its own session.

    Without a Stripe key the resolver answers from the local cache only.
    """
    settings = get_subscription_settings()

    try:
        gateway = get_billing_client(settings)
    except ValueError:
        logger.warning("Stripe not configured; resolving entitlements locally")
        gateway = None

    try:
        with session_scope() as db:
            resolver = EntitlementResolver(db, gateway, settings=settings)
            manager = TrialLifecycleManager(db, resolver, settings=settings)
            return await manager.downgrade_expired_trials(
                dry_run=dry_run,
                user_id=user_id,
                stop_event=stop_event,
                deadline=deadline,
            )
    finally:
        if gateway is not None:
            await gateway.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for running the sweep from the command line."""
    args = build_parser().parse_args(argv)

    if args.dry_run:
        print("DRY RUN - no roles will be changed")

    try:
        result = asyncio.run(run_trial_sweep(dry_run=args.dry_run, user_id=args.user_id))
    except Exception as e:
        logger.exception("Expired trial sweep failed", extra={"error": str(e)})
        print(f"Expired trial sweep failed: {e}", file=sys.stderr)
        return 1

    print(f"Expired trial sweep completed: {result.to_dict()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
