"""
Recalculate financial transactions outside the HTTP layer.

Usage:
    python scripts/recalculate_financial_transactions.py            # all eligible work orders
    python scripts/recalculate_financial_transactions.py 12 15 40   # listed work orders

Every target is recomputed from scratch; existing transactions and failure
records are replaced. Exits with status 1 when any work order failed.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.core.config import settings
from backend.app.core.observability import configure_logging
from backend.app.db.session import AsyncSessionLocal
from backend.app.domain.settlement.runtime import build_settlement_components
import backend.app.main  # noqa: F401  registers all models


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Recalculate financial transactions")
    parser.add_argument("work_order_ids", nargs="*", type=int, help="Work orders to recalculate (default: all eligible)")
    parser.add_argument("--concurrency", type=int, default=settings.recalculation_concurrency)
    return parser.parse_args(argv)


async def recalculate(work_order_ids, concurrency: int):
    components = build_settlement_components(settings, AsyncSessionLocal)
    driver = components.recalculation
    driver.concurrency = max(1, concurrency)

    if work_order_ids:
        print(f"🔄 Recalculating {len(work_order_ids)} work orders...")
        report = await driver.recalculate_work_orders(work_order_ids)
    else:
        print("🔄 Recalculating all eligible work orders...")
        report = await driver.recalculate_all_eligible()

    for result in report.results:
        if result.failure_reason:
            print(f"  ❌ #{result.work_order_id}: {result.outcome.value} ({result.failure_reason.value}) {result.message}")

    print(
        f"\n✅ Processed {report.processed}: {report.created} created, {report.updated} updated, "
        f"{report.failed} failed, {report.skipped} skipped"
    )
    return report


def main(argv=None) -> int:
    configure_logging()
    args = parse_args(argv)
    report = asyncio.run(recalculate(args.work_order_ids, args.concurrency))
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
