"""
Municipality discount confirmation workflow.

A configured municipality discount only applies once an admin confirms
it. Confirming records the decision and re-settles the work orders that
were blocked waiting for it.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.failed_financial_transaction import FailedFinancialTransaction
from backend.app.models.finance_enums import FailureReason
from backend.app.domain.settlement.ledgers import FailureLedger
from backend.app.domain.settlement.pricing import PricingStore
from backend.app.domain.settlement.recalculation import RecalculationDriver, RecalculationReport

logger = logging.getLogger(__name__)


async def confirm_discount(
    db: AsyncSession,
    driver: RecalculationDriver,
    municipality: str,
    discount_percent: float,
    confirmed_by: str,
    work_order_ids: Optional[List[int]] = None,
):
    """
    Confirm a municipality discount and recalculate the work orders it blocked.

    Args:
        db: Database session used for the confirmation itself
        driver: Recalculation driver for the blocked work orders
        municipality: Municipality name as it appears on work orders
        discount_percent: Confirmed percent, 0..100
        confirmed_by: Name of the confirming admin
        work_order_ids: Work orders to recalculate; derived from the
            pending failure records of the municipality when omitted

    Returns:
        (MunicipalityDiscountConfirmation, RecalculationReport)
    """
    if not municipality or not municipality.strip():
        raise ValueError("Municipality is required")
    if discount_percent is None or not 0 <= discount_percent <= 100:
        raise ValueError("Discount percent must be between 0 and 100")

    if work_order_ids is None:
        work_order_ids = await FailureLedger.pending_for_municipality(db, municipality)

    confirmation = await PricingStore.upsert_confirmation(db, municipality, discount_percent, confirmed_by)
    logger.info(
        "Discount %s%% confirmed for %s by %s; recalculating %s work orders",
        discount_percent, municipality, confirmed_by, len(work_order_ids),
    )

    report = await driver.recalculate_work_orders(work_order_ids) if work_order_ids else RecalculationReport()
    return confirmation, report


async def pending_confirmations(db: AsyncSession) -> List[Dict]:
    """Open discount confirmations grouped by municipality, with the blocked work orders."""
    result = await db.execute(
        select(FailedFinancialTransaction).where(
            FailedFinancialTransaction.failure_reason == FailureReason.PENDING_DISCOUNT_CONFIRMATION,
            FailedFinancialTransaction.resolved == False,
            FailedFinancialTransaction.excluded_from_finances == False,
        ).order_by(FailedFinancialTransaction.pending_municipality, FailedFinancialTransaction.work_order_id)
    )

    grouped: Dict[str, Dict] = {}
    for record in result.scalars().all():
        municipality = record.pending_municipality or ""
        group = grouped.setdefault(municipality, {
            "municipality": municipality,
            "suggested_discount": record.suggested_discount,
            "work_order_ids": [],
        })
        group["work_order_ids"].append(record.work_order_id)

    return [
        {**group, "count": len(group["work_order_ids"])}
        for group in grouped.values()
    ]
