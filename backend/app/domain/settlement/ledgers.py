"""
Transaction and failure ledgers.

Storage access for settlement records. Nothing here commits; the
settlement service owns the transaction boundary so that replacing a
transaction and clearing its failure record land in one commit.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func, and_, or_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.failed_financial_transaction import FailedFinancialTransaction
from backend.app.models.finance_enums import FailureReason
from backend.app.models.financial_transaction import FinancialTransaction, TransactionTechnician
from backend.app.domain.settlement.decision import SettlementComputation, SettlementFailure


def month_bounds(moment: datetime):
    """First instant of the calendar month of moment, and of the next month."""
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class TransactionLedger:

    @staticmethod
    async def get(db: AsyncSession, work_order_id: int) -> Optional[FinancialTransaction]:
        result = await db.execute(
            select(FinancialTransaction).where(FinancialTransaction.work_order_id == work_order_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def delete(db: AsyncSession, transaction: FinancialTransaction) -> None:
        """Delete a transaction with its technician rows, flushed so a replacement can insert."""
        await db.delete(transaction)
        await db.flush()

    @staticmethod
    def build(
        computation: SettlementComputation,
        work_order,
        evidence,
        verified_at: datetime,
        verified_by: Optional[str] = None,
    ) -> FinancialTransaction:
        """Create an unsaved transaction with its technician rows."""
        transaction = FinancialTransaction(
            work_order_id=work_order.id,
            evidence_id=evidence.id if evidence is not None else None,
            tis_job_id=work_order.tis_job_id,
            customer_status=computation.customer_status,
            municipality=computation.municipality,
            base_price=computation.base_price,
            discount_percent=computation.discount_percent,
            discount_amount=computation.discount_amount,
            final_price=computation.final_price,
            total_technician_earnings=computation.total_technician_earnings,
            company_profit=computation.company_profit,
            verified_at=verified_at,
            verified_by=verified_by,
        )
        transaction.technicians = [
            TransactionTechnician(
                technician_id=earning.technician_id,
                position=position,
                name=earning.name,
                payment_type=earning.payment_type,
                nominal_earnings=earning.nominal_earnings,
                earnings=earning.earnings,
                cash_payout=earning.cash_payout,
                monthly_salary=earning.monthly_salary,
                earned_towards_salary=earning.earned_towards_salary,
                previously_earned=earning.previously_earned,
                exceeded_salary=earning.exceeded_salary,
                excess_amount=earning.excess_amount,
            )
            for position, earning in enumerate(computation.technicians)
        ]
        return transaction

    @staticmethod
    def matches(transaction: FinancialTransaction, computation: SettlementComputation) -> bool:
        """True when a stored transaction carries exactly the computed figures."""
        header = (
            transaction.customer_status == computation.customer_status
            and transaction.municipality == computation.municipality
            and transaction.base_price == computation.base_price
            and transaction.discount_percent == computation.discount_percent
            and transaction.discount_amount == computation.discount_amount
            and transaction.final_price == computation.final_price
            and transaction.total_technician_earnings == computation.total_technician_earnings
            and transaction.company_profit == computation.company_profit
        )
        if not header or len(transaction.technicians) != len(computation.technicians):
            return False

        for stored, computed in zip(transaction.technicians, computation.technicians):
            if (
                stored.technician_id != computed.technician_id
                or stored.payment_type != computed.payment_type
                or stored.nominal_earnings != computed.nominal_earnings
                or stored.earnings != computed.earnings
                or stored.cash_payout != computed.cash_payout
                or stored.earned_towards_salary != computed.earned_towards_salary
                or stored.previously_earned != computed.previously_earned
                or stored.excess_amount != computed.excess_amount
                or stored.exceeded_salary != computed.exceeded_salary
            ):
                return False
        return True

    @staticmethod
    async def previously_earned(
        db: AsyncSession,
        technician_id: int,
        verified_at: datetime,
        work_order_id: int,
    ) -> float:
        """
        Salary accrual of a technician earlier in the calendar month.

        Counts transactions in the same month that come before this work
        order in (verified_at, work_order_id) order, so recalculating one
        work order never sees its own or later accruals.
        """
        start, end = month_bounds(verified_at)
        query = (
            select(func.coalesce(func.sum(TransactionTechnician.earned_towards_salary), 0.0))
            .join(FinancialTransaction, TransactionTechnician.transaction_id == FinancialTransaction.id)
            .where(
                TransactionTechnician.technician_id == technician_id,
                FinancialTransaction.verified_at >= start,
                FinancialTransaction.verified_at < end,
                FinancialTransaction.work_order_id != work_order_id,
                or_(
                    FinancialTransaction.verified_at < verified_at,
                    and_(
                        FinancialTransaction.verified_at == verified_at,
                        FinancialTransaction.work_order_id < work_order_id,
                    ),
                ),
            )
        )
        return float((await db.execute(query)).scalar() or 0.0)

    @staticmethod
    async def later_in_month(
        db: AsyncSession,
        technician_ids,
        verified_at: datetime,
        work_order_id: int,
    ) -> List[FinancialTransaction]:
        """
        Transactions of the given technicians later in the same calendar month.

        Ordered by (verified_at, work_order_id), the order salary accrues in.
        Rows are reloaded even when the session already holds them, since
        their accrual is about to be compared and rewritten.
        """
        _, end = month_bounds(verified_at)
        involved = (
            select(TransactionTechnician.transaction_id)
            .where(TransactionTechnician.technician_id.in_(list(technician_ids)))
        )
        result = await db.execute(
            select(FinancialTransaction)
            .where(
                FinancialTransaction.id.in_(involved),
                FinancialTransaction.verified_at < end,
                or_(
                    FinancialTransaction.verified_at > verified_at,
                    and_(
                        FinancialTransaction.verified_at == verified_at,
                        FinancialTransaction.work_order_id > work_order_id,
                    ),
                ),
            )
            .order_by(FinancialTransaction.verified_at, FinancialTransaction.work_order_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


class FailureLedger:

    @staticmethod
    async def get(db: AsyncSession, work_order_id: int) -> Optional[FailedFinancialTransaction]:
        result = await db.execute(
            select(FailedFinancialTransaction).where(FailedFinancialTransaction.work_order_id == work_order_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def delete(db: AsyncSession, record: FailedFinancialTransaction) -> None:
        await db.delete(record)
        await db.flush()

    @staticmethod
    def apply(
        record: Optional[FailedFinancialTransaction],
        work_order_id: int,
        failure: SettlementFailure,
        work_order_details: dict,
        now: datetime,
    ) -> FailedFinancialTransaction:
        """
        Write a failure onto an existing record or a new one.

        A repeated failure reopens the record and bumps attempt_count.
        """
        if record is None:
            record = FailedFinancialTransaction(work_order_id=work_order_id, attempt_count=1)
        else:
            record.attempt_count = (record.attempt_count or 0) + 1

        record.failure_reason = failure.reason
        record.failure_message = failure.message
        record.missing_fields = list(failure.missing_fields)
        record.work_order_details = dict(work_order_details)
        record.last_attempt_at = now
        record.resolved = False
        record.resolved_at = None
        record.pending_municipality = failure.pending_municipality
        record.suggested_discount = failure.suggested_discount
        record.requires_admin_action = failure.requires_admin_action
        return record

    @staticmethod
    async def list_unresolved(db: AsyncSession, reason: Optional[FailureReason] = None) -> List[FailedFinancialTransaction]:
        """Open failures, newest first. Excluded work orders are not listed."""
        query = select(FailedFinancialTransaction).where(
            FailedFinancialTransaction.resolved == False,
            FailedFinancialTransaction.excluded_from_finances == False,
        )
        if reason is not None:
            query = query.where(FailedFinancialTransaction.failure_reason == reason)
        query = query.order_by(desc(FailedFinancialTransaction.created_at), desc(FailedFinancialTransaction.id))
        result = await db.execute(query)
        return result.scalars().all()

    @staticmethod
    async def pending_for_municipality(db: AsyncSession, municipality: str) -> List[int]:
        """Work orders blocked on a discount confirmation for a municipality."""
        result = await db.execute(
            select(FailedFinancialTransaction.work_order_id).where(
                FailedFinancialTransaction.failure_reason == FailureReason.PENDING_DISCOUNT_CONFIRMATION,
                FailedFinancialTransaction.pending_municipality == municipality,
                FailedFinancialTransaction.resolved == False,
                FailedFinancialTransaction.excluded_from_finances == False,
            ).order_by(FailedFinancialTransaction.work_order_id)
        )
        return list(result.scalars().all())
