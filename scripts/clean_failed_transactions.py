"""
Clean stale failure records.

Deletes unresolved failure records whose work order has since been
settled or no longer exists. Excluded work orders are never touched.

Usage:
    python scripts/clean_failed_transactions.py [--reason MISSING_CUSTOMER_STATUS ...] [--dry-run]
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.observability import configure_logging
from backend.app.db.session import AsyncSessionLocal
from backend.app.models.failed_financial_transaction import FailedFinancialTransaction
from backend.app.models.finance_enums import FailureReason
from backend.app.models.financial_transaction import FinancialTransaction
from backend.app.models.work_order import WorkOrder
import backend.app.main  # noqa: F401  registers all models


async def find_stale_failures(db: AsyncSession, reasons: Optional[List[FailureReason]] = None) -> List[int]:
    """Work order ids of unresolved failure records that no longer describe an open problem."""
    settled = select(FinancialTransaction.work_order_id)
    existing = select(WorkOrder.id)

    query = select(FailedFinancialTransaction.work_order_id).where(
        FailedFinancialTransaction.resolved == False,
        FailedFinancialTransaction.excluded_from_finances == False,
        (FailedFinancialTransaction.work_order_id.in_(settled))
        | (FailedFinancialTransaction.work_order_id.not_in(existing)),
    )
    if reasons:
        query = query.where(FailedFinancialTransaction.failure_reason.in_(reasons))

    result = await db.execute(query.order_by(FailedFinancialTransaction.work_order_id))
    return list(result.scalars().all())


async def clean_failed_transactions(
    db: AsyncSession,
    reasons: Optional[List[FailureReason]] = None,
    dry_run: bool = False,
) -> List[int]:
    work_order_ids = await find_stale_failures(db, reasons)
    if work_order_ids and not dry_run:
        await db.execute(
            delete(FailedFinancialTransaction).where(FailedFinancialTransaction.work_order_id.in_(work_order_ids))
        )
        await db.commit()
    return work_order_ids


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Delete stale failure records")
    parser.add_argument("--reason", action="append", choices=[r.value for r in FailureReason], default=[])
    parser.add_argument("--dry-run", action="store_true")
    return parser.parse_args(argv)


async def run(reasons, dry_run: bool):
    async with AsyncSessionLocal() as db:
        ids = await clean_failed_transactions(db, reasons, dry_run)

    verb = "Would delete" if dry_run else "Deleted"
    print(f"🧹 {verb} {len(ids)} stale failure records")
    for work_order_id in ids:
        print(f"  - work order #{work_order_id}")


def main(argv=None) -> int:
    configure_logging()
    args = parse_args(argv)
    asyncio.run(run([FailureReason(r) for r in args.reason], args.dry_run))
    return 0


if __name__ == "__main__":
    sys.exit(main())
