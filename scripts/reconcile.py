"""
Audit every organization's entitlements and repair the ones that drifted.

Usage:
    python -m scripts.reconcile            # audit and repair
    python -m scripts.reconcile --dry-run  # audit only
"""
import argparse
import asyncio
import sys

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.reconciliation.service import Reconciler
from app.utils import get_logger


log = get_logger(__name__)


async def main(dry_run: bool) -> int:
    await init_db()

    async with AsyncSessionLocal() as db:
        reconciler = Reconciler(db)
        report = await reconciler.audit()

        for organization_id in report.organizations_without_subscription:
            log.warning("No active subscription: %s", organization_id)
        for organization_id in report.organizations_with_duplicate_subscriptions:
            log.warning("Several active subscriptions: %s", organization_id)
        for overrun in report.organizations_exceeding_quota:
            log.warning("Over quota: %s (%d/%d)", overrun.organization_id,
                        overrun.current_modules, overrun.max_allowed)
        for organization_id in report.organizations_missing_core_modules:
            log.warning("Missing core modules: %s", organization_id)

        if report.is_clean:
            log.info("No inconsistencies found")
            return 0
        if dry_run:
            log.info("Dry run: %d organizations need repair", len(report.organization_ids))
            return 0

        results = await reconciler.repair_all(report.organization_ids)

    failed = [organization_id for organization_id, result in results.items() if not result.success]
    log.info("Repaired %d organizations, %d failed", len(results) - len(failed), len(failed))
    return 1 if failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Audit and repair organization entitlements")
    parser.add_argument("--dry-run", action="store_true", help="Only report, change nothing")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.dry_run)))
