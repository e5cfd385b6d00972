"""
Recalculation driver.

Re-settles a set of work orders from scratch (replace mode), each in its
own session and commit, so one failing work order never rolls back the
others. Bulk runs go through a bounded worker pool.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional

from sqlalchemy import select

from backend.app.models.finance_enums import FailureReason, PaymentType, SettlementOutcome, WorkOrderStatus
from backend.app.models.technician import Technician
from backend.app.models.work_order import WorkOrder
from backend.app.domain.settlement.service import SettlementResult, SettlementService

logger = logging.getLogger(__name__)

SettleCallable = Callable[[int], Awaitable[SettlementResult]]


@dataclass
class RecalculationReport:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[SettlementResult] = field(default_factory=list)

    def add(self, result: SettlementResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.outcome == SettlementOutcome.CREATED:
            self.created += 1
        elif result.outcome == SettlementOutcome.UPDATED:
            self.updated += 1
        elif result.outcome in (SettlementOutcome.FAILED, SettlementOutcome.PENDING_CONFIRMATION):
            self.failed += 1
        else:
            self.skipped += 1

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.as_dict() for r in self.results],
        }


class RecalculationDriver:
    """
    Full recompute of settlements for one, many or all eligible work orders.

    Args:
        session_factory: async_sessionmaker producing one session per work order
        service: SettlementService doing the actual settlement
        concurrency: worker pool size for bulk runs
        settle: replaces the per-work-order settle step (tests)
    """

    def __init__(
        self,
        session_factory,
        service: SettlementService,
        concurrency: int = 5,
        settle: Optional[SettleCallable] = None,
    ):
        self.session_factory = session_factory
        self.service = service
        self.concurrency = max(1, concurrency)
        self.settle = settle or self._settle_in_session

    async def _settle_in_session(self, work_order_id: int) -> SettlementResult:
        async with self.session_factory() as db:
            try:
                return await self.service.settle_work_order(db, work_order_id, replace=True)
            except Exception as e:
                logger.exception("Recalculation of work order %s raised", work_order_id)
                return await self.service.record_unexpected_failure(db, work_order_id, e)

    async def _settle_guarded(self, work_order_id: int) -> SettlementResult:
        try:
            return await self.settle(work_order_id)
        except Exception as e:
            # Even recording the failure failed (storage down); report and move on
            logger.exception("Could not recalculate work order %s", work_order_id)
            return SettlementResult(
                work_order_id,
                SettlementOutcome.FAILED,
                failure_reason=FailureReason.OTHER_ERROR,
                message=f"Unexpected error: {e}",
            )

    async def recalculate_work_order(self, work_order_id: int) -> SettlementResult:
        """Manual retry of a single work order."""
        return await self._settle_guarded(work_order_id)

    async def _run_pooled(self, work_order_ids: List[int]) -> RecalculationReport:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(work_order_id: int) -> SettlementResult:
            async with semaphore:
                return await self._settle_guarded(work_order_id)

        report = RecalculationReport()
        for result in await asyncio.gather(*(worker(i) for i in work_order_ids)):
            report.add(result)
        return report

    async def recalculate_work_orders(self, work_order_ids: Iterable[int]) -> RecalculationReport:
        """
        Recalculate an explicit list.

        Work orders without a fixed-salary technician run concurrently, at
        most `concurrency` at a time; the others run one by one in
        (verified_at, id) order afterwards, like the full sweep.
        """
        ids = list(dict.fromkeys(work_order_ids))
        pooled, sequential = await self._split_by_salary(ids) if ids else ([], [])

        report = await self._run_pooled(pooled)
        for result in (await self.recalculate_sequentially(sequential)).results:
            report.add(result)

        logger.info(
            "Recalculated %s work orders: %s created, %s updated, %s failed, %s skipped",
            report.processed, report.created, report.updated, report.failed, report.skipped,
        )
        return report

    async def recalculate_sequentially(self, work_order_ids: Iterable[int]) -> RecalculationReport:
        report = RecalculationReport()
        for work_order_id in dict.fromkeys(work_order_ids):
            report.add(await self._settle_guarded(work_order_id))
        return report

    async def _split_by_salary(self, work_order_ids: Optional[List[int]] = None):
        """
        Split work orders into (independent, salaried).

        Salaried ones involve a fixed-salary technician and come back in
        (verified_at, id) order. With no ids, all completed and verified
        work orders are split; listed ids not found stay independent.
        """
        async with self.session_factory() as db:
            salaried = set((await db.execute(
                select(Technician.id).where(Technician.payment_type == PaymentType.FIXED_SALARY)
            )).scalars().all())

            query = (
                select(WorkOrder.id, WorkOrder.verified_at, WorkOrder.technician_id, WorkOrder.technician2_id)
                .order_by(WorkOrder.verified_at, WorkOrder.id)
            )
            if work_order_ids is None:
                query = query.where(WorkOrder.status == WorkOrderStatus.COMPLETED, WorkOrder.verified == True)
            else:
                query = query.where(WorkOrder.id.in_(work_order_ids))
            rows = (await db.execute(query)).all()

        dependent = [
            row.id for row in rows
            if row.technician_id in salaried or row.technician2_id in salaried
        ]
        skip = set(dependent)
        candidates = [row.id for row in rows] if work_order_ids is None else work_order_ids
        return [i for i in candidates if i not in skip], dependent

    async def eligible_work_orders(self):
        """
        Ids of completed, verified work orders split for the sweep.

        Returns (independent, salaried): work orders without a fixed-salary
        technician, and those with one ordered by (verified_at, id).
        """
        return await self._split_by_salary()

    async def recalculate_all_eligible(self) -> RecalculationReport:
        """
        Bulk reconciliation sweep.

        Salary accrual of a settlement depends on earlier settlements in the
        month, so work orders with a fixed-salary technician run one by one
        in verification order after the pooled ones.
        """
        independent, dependent = await self.eligible_work_orders()
        logger.info(
            "Recalculating all eligible work orders: %s pooled, %s sequential",
            len(independent), len(dependent),
        )

        report = await self._run_pooled(independent)
        for result in (await self.recalculate_sequentially(dependent)).results:
            report.add(result)

        logger.info(
            "Sweep finished: %s created, %s updated, %s failed, %s skipped",
            report.created, report.updated, report.failed, report.skipped,
        )
        return report
