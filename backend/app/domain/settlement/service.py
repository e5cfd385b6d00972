"""
Settlement Service (Domain Logic).

Loads the inputs of the decision procedure, applies exactly one ledger
write per invocation and emits ledger events after commit.

Flow:
1. Skip work orders excluded from finances
2. Load work order, evidence, settings, discount confirmation, technicians
3. Salary accrual earlier in the month for fixed-salary technicians
4. Decide (unexpected errors become OTHER_ERROR failures)
5. Write transaction or failure record, removing the other one
6. Split salary accrual again for later transactions of the same
   fixed-salary technicians in the month
7. Commit; on a uniqueness violation roll back and start over
8. Emit ledger events
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import SettlementConflictError
from backend.app.models.failed_financial_transaction import FailedFinancialTransaction
from backend.app.models.finance_enums import FailureReason, PaymentType, SettlementOutcome
from backend.app.models.financial_transaction import FinancialTransaction
from backend.app.models.technician import Technician
from backend.app.models.work_order import WorkOrder, WorkOrderEvidence
from backend.app.services.notification_service import NotificationService
from backend.app.domain.settlement.decision import (
    DecisionKind,
    SettlementDecision,
    SplitPolicy,
    accrue_towards_salary,
    decide_settlement,
    failure_decision,
    missing_field,
    work_order_snapshot,
)
from backend.app.domain.settlement.events import LedgerChange, LedgerEventBus
from backend.app.domain.settlement.ledgers import FailureLedger, TransactionLedger
from backend.app.domain.settlement.pricing import PricingStore

logger = logging.getLogger(__name__)


def salaried_technician_ids(transaction: FinancialTransaction) -> set:
    return {
        entry.technician_id
        for entry in transaction.technicians
        if entry.payment_type == PaymentType.FIXED_SALARY
    }


@dataclass
class SettlementResult:
    work_order_id: int
    outcome: SettlementOutcome
    failure_reason: Optional[FailureReason] = None
    message: str = ""
    transaction_id: Optional[int] = None
    missing_fields: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "work_order_id": self.work_order_id,
            "outcome": self.outcome.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "missing_fields": self.missing_fields,
        }


class SettlementService:
    """
    Settles work orders against the transaction and failure ledgers.

    One instance per application; it holds no per-request state.
    """

    def __init__(
        self,
        events: Optional[LedgerEventBus] = None,
        split_policy: SplitPolicy = SplitPolicy.EVEN,
        digits: int = 2,
        max_attempts: int = 3,
    ):
        self.events = events or LedgerEventBus()
        self.split_policy = SplitPolicy(split_policy)
        self.digits = digits
        self.max_attempts = max_attempts

    @classmethod
    def from_settings(cls, settings, events: Optional[LedgerEventBus] = None) -> "SettlementService":
        return cls(
            events=events,
            split_policy=settings.technician_split_policy,
            digits=settings.settlement_rounding_digits,
        )

    async def settle_work_order(
        self,
        db: AsyncSession,
        work_order_id: int,
        replace: bool = False,
        verified_by: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle one work order.

        Args:
            db: Database session; committed by this call
            work_order_id: Work order to settle
            replace: Recompute from scratch, replacing any existing
                transaction even when it would come out the same
            verified_by: Name stamped on a newly written transaction

        Returns:
            SettlementResult

        Raises:
            SettlementConflictError: the uniqueness constraint kept
                rejecting the write after max_attempts
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result, changes = await self._settle_once(db, work_order_id, replace, verified_by)
                await db.commit()
            except IntegrityError as e:
                # A concurrent settlement inserted first; the next pass sees its row
                await db.rollback()
                logger.warning(
                    "Settlement write for work order %s collided (attempt %s/%s): %s",
                    work_order_id, attempt, self.max_attempts, e.orig,
                )
                continue

            for change in changes:
                await self.events.emit(change)

            logger.info(
                "Work order %s settled: %s%s",
                work_order_id,
                result.outcome.value,
                f" ({result.failure_reason.value})" if result.failure_reason else "",
            )
            return result

        raise SettlementConflictError(
            f"Could not settle work order {work_order_id}: concurrent writes kept conflicting",
            work_order_id=work_order_id,
        )

    async def record_unexpected_failure(
        self,
        db: AsyncSession,
        work_order_id: int,
        error: Exception,
    ) -> SettlementResult:
        """
        Record an exception raised outside the decision procedure as OTHER_ERROR.

        Used by batch callers so one bad work order does not halt a sweep.
        """
        await db.rollback()
        message = f"Unexpected error: {error}"

        for _ in range(self.max_attempts):
            record = await FailureLedger.get(db, work_order_id)
            if record is not None and record.excluded_from_finances:
                return SettlementResult(work_order_id, SettlementOutcome.EXCLUDED, message="Excluded from finances")

            work_order = await db.get(WorkOrder, work_order_id)
            decision = failure_decision(
                FailureReason.OTHER_ERROR,
                message,
                work_order_snapshot(work_order),
                [missing_field("unknown", str(error))],
            )
            record = FailureLedger.apply(
                record, work_order_id, decision.failure, decision.work_order_details, datetime.utcnow()
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            await self.events.emit(LedgerChange(work_order_id, "failure", "upserted"))
            return SettlementResult(
                work_order_id,
                SettlementOutcome.FAILED,
                failure_reason=FailureReason.OTHER_ERROR,
                message=message,
                missing_fields=list(record.missing_fields),
            )

        raise SettlementConflictError(
            f"Could not record failure for work order {work_order_id}",
            work_order_id=work_order_id,
        )

    async def resolve_failure(self, db: AsyncSession, work_order_id: int):
        """Mark a failure record resolved. Returns None when there is none."""
        record = await FailureLedger.get(db, work_order_id)
        if record is None:
            return None

        record.resolved = True
        record.resolved_at = datetime.utcnow()
        await db.commit()
        await db.refresh(record)
        await self.events.emit(LedgerChange(work_order_id, "failure", "resolved"))
        return record

    async def exclude_work_order(self, db: AsyncSession, work_order_id: int, excluded_by: str):
        """
        Take a work order out of settlement permanently.

        Removes its transaction, if any, and flags its failure record,
        creating one when the work order never failed.
        """
        for _ in range(self.max_attempts):
            changes = []
            existing = await TransactionLedger.get(db, work_order_id)
            if existing is not None:
                changes.extend(await self._remove_transaction(db, existing))

            now = datetime.utcnow()
            record = await FailureLedger.get(db, work_order_id)
            if record is None:
                work_order = await db.get(WorkOrder, work_order_id)
                record = FailedFinancialTransaction(
                    work_order_id=work_order_id,
                    failure_reason=FailureReason.OTHER_ERROR,
                    failure_message="Excluded from finances",
                    missing_fields=[],
                    work_order_details=work_order_snapshot(work_order),
                    attempt_count=0,
                    last_attempt_at=now,
                )
                db.add(record)

            record.excluded_from_finances = True
            record.excluded_at = now
            record.excluded_by = excluded_by
            record.requires_admin_action = False
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            await db.refresh(record)
            changes.append(LedgerChange(work_order_id, "failure", "excluded"))
            for change in changes:
                await self.events.emit(change)
            logger.info("Work order %s excluded from finances by %s", work_order_id, excluded_by)
            return record

        raise SettlementConflictError(
            f"Could not exclude work order {work_order_id}: concurrent writes kept conflicting",
            work_order_id=work_order_id,
        )

    async def _remove_transaction(self, db: AsyncSession, transaction: FinancialTransaction) -> List[LedgerChange]:
        """Delete a transaction and hand its salary headroom to later work orders."""
        work_order_id = transaction.work_order_id
        verified_at = transaction.verified_at
        released = salaried_technician_ids(transaction)

        await TransactionLedger.delete(db, transaction)
        changes = [LedgerChange(work_order_id, "transaction", "deleted")]
        changes.extend(await self._reaccrue_later(db, work_order_id, verified_at, released))
        return changes

    async def _reaccrue_later(
        self,
        db: AsyncSession,
        work_order_id: int,
        verified_at: datetime,
        technician_ids,
        written: Optional[FinancialTransaction] = None,
    ) -> List[LedgerChange]:
        """
        Split salary accrual again for transactions after this work order.

        Accrual only looks at earlier work orders, so writing or removing a
        salaried settlement shifts the headroom of every later transaction
        of the same technicians in that month. Their stored nominal earnings
        are split at the cap again in (verified_at, work_order_id) order,
        inside the caller's commit, so the month never accrues past
        monthly_salary whatever order work orders settle in.
        """
        if not technician_ids:
            return []

        accrued = {}
        for technician_id in technician_ids:
            accrued[technician_id] = await TransactionLedger.previously_earned(
                db, technician_id, verified_at, work_order_id
            )
        if written is not None:
            for entry in written.technicians:
                if entry.technician_id in accrued:
                    accrued[entry.technician_id] += entry.earned_towards_salary or 0.0

        changes = []
        for transaction in await TransactionLedger.later_in_month(db, accrued, verified_at, work_order_id):
            split_again = False
            for entry in transaction.technicians:
                if entry.technician_id not in accrued or entry.payment_type != PaymentType.FIXED_SALARY:
                    continue
                before = round(accrued[entry.technician_id], self.digits)
                if round(entry.previously_earned or 0.0, self.digits) != before:
                    towards, excess, exceeded = accrue_towards_salary(
                        entry.nominal_earnings, entry.monthly_salary or 0.0, before, self.digits
                    )
                    entry.previously_earned = before
                    entry.earned_towards_salary = towards
                    entry.earnings = towards
                    entry.excess_amount = excess
                    entry.exceeded_salary = exceeded
                    split_again = True
                accrued[entry.technician_id] = before + (entry.earned_towards_salary or 0.0)

            if split_again:
                transaction.total_technician_earnings = round(
                    sum(e.earnings for e in transaction.technicians), self.digits
                )
                transaction.company_profit = round(
                    transaction.final_price - transaction.total_technician_earnings, self.digits
                )
                changes.append(LedgerChange(transaction.work_order_id, "transaction", "reaccrued"))

        if changes:
            await db.flush()
            logger.info(
                "Salary accrual split again on %s later work orders after work order %s",
                len(changes), work_order_id,
            )
        return changes

    async def _load_technicians(self, db: AsyncSession, work_order: WorkOrder):
        """Technicians in assignment order, plus the ids with no technician row."""
        ids = work_order.technician_ids
        if not ids:
            return [], []
        result = await db.execute(select(Technician).where(Technician.id.in_(ids)))
        by_id = {t.id: t for t in result.scalars().all()}
        return [by_id[i] for i in ids if i in by_id], [i for i in ids if i not in by_id]

    async def _decide(self, db: AsyncSession, work_order_id: int, work_order: Optional[WorkOrder]) -> SettlementDecision:
        if work_order is None:
            return decide_settlement(None, None, None, None, [])

        technicians, unknown_ids = await self._load_technicians(db, work_order)
        if unknown_ids and work_order.is_eligible_for_settlement:
            return failure_decision(
                FailureReason.OTHER_ERROR,
                f"Assigned technician(s) not found: {', '.join(str(i) for i in unknown_ids)}",
                work_order_snapshot(work_order, technicians),
                [missing_field(f"technician.{i}", "Technician record") for i in unknown_ids],
            )

        evidence = await self._evidence(db, work_order_id)
        settings = await PricingStore.get_settings(db)
        confirmation = await PricingStore.get_confirmation(db, work_order.municipality)

        previously_earned = {}
        verified_at = work_order.verified_at or datetime.utcnow()
        for tech in technicians:
            if tech.is_salaried:
                previously_earned[tech.id] = await TransactionLedger.previously_earned(
                    db, tech.id, verified_at, work_order_id
                )

        try:
            return decide_settlement(
                work_order,
                evidence,
                settings,
                confirmation,
                technicians,
                previously_earned=previously_earned,
                split_policy=self.split_policy,
                digits=self.digits,
            )
        except Exception as e:
            logger.exception("Settlement computation failed for work order %s", work_order_id)
            return failure_decision(
                FailureReason.OTHER_ERROR,
                f"Error computing settlement: {e}",
                work_order_snapshot(work_order, technicians, evidence.customer_status if evidence else None),
                [missing_field("unknown", str(e))],
            )

    async def _settle_once(
        self,
        db: AsyncSession,
        work_order_id: int,
        replace: bool,
        verified_by: Optional[str],
    ):
        """One settlement pass without committing. Returns (result, ledger changes)."""
        failure_record = await FailureLedger.get(db, work_order_id)
        if failure_record is not None and failure_record.excluded_from_finances:
            return SettlementResult(work_order_id, SettlementOutcome.EXCLUDED, message="Excluded from finances"), []

        work_order = await db.get(WorkOrder, work_order_id)
        decision = await self._decide(db, work_order_id, work_order)

        if decision.kind == DecisionKind.NOT_ELIGIBLE:
            return SettlementResult(work_order_id, SettlementOutcome.NOT_ELIGIBLE, message=decision.message), []

        existing = await TransactionLedger.get(db, work_order_id)
        changes = []

        if decision.kind == DecisionKind.TRANSACTION:
            computation = decision.computation
            if existing is not None and not replace and TransactionLedger.matches(existing, computation):
                outcome = SettlementOutcome.UNCHANGED
                transaction = existing
            else:
                outcome = SettlementOutcome.CREATED
                released = set()
                if existing is not None:
                    verified_by = verified_by or existing.verified_by
                    released = salaried_technician_ids(existing)
                    await TransactionLedger.delete(db, existing)
                    outcome = SettlementOutcome.UPDATED

                transaction = TransactionLedger.build(
                    computation,
                    work_order,
                    await self._evidence(db, work_order_id),
                    verified_at=work_order.verified_at or datetime.utcnow(),
                    verified_by=verified_by,
                )
                db.add(transaction)
                await db.flush()
                changes.append(LedgerChange(
                    work_order_id, "transaction", "created" if outcome == SettlementOutcome.CREATED else "replaced"
                ))
                changes.extend(await self._reaccrue_later(
                    db,
                    work_order_id,
                    transaction.verified_at,
                    released | salaried_technician_ids(transaction),
                    written=transaction,
                ))

            if failure_record is not None:
                await FailureLedger.delete(db, failure_record)
                changes.append(LedgerChange(work_order_id, "failure", "deleted"))

            return SettlementResult(
                work_order_id,
                outcome,
                message=decision.message,
                transaction_id=transaction.id,
            ), changes

        failure = decision.failure

        if existing is not None and not replace:
            # Keep the settled figures; a later recalculation decides what replaces them
            logger.warning(
                "Work order %s already settled as transaction %s but now fails with %s; keeping transaction",
                work_order_id, existing.id, failure.reason.value,
            )
            return SettlementResult(
                work_order_id,
                SettlementOutcome.UNCHANGED,
                failure_reason=failure.reason,
                message=failure.message,
                transaction_id=existing.id,
                missing_fields=list(failure.missing_fields),
            ), []

        if existing is not None:
            changes.extend(await self._remove_transaction(db, existing))

        newly_pending = decision.kind == DecisionKind.PENDING_CONFIRMATION and (
            failure_record is None
            or failure_record.resolved
            or failure_record.failure_reason != FailureReason.PENDING_DISCOUNT_CONFIRMATION
            or failure_record.pending_municipality != failure.pending_municipality
        )

        record = FailureLedger.apply(
            failure_record, work_order_id, failure, decision.work_order_details, datetime.utcnow()
        )
        db.add(record)
        await db.flush()
        changes.append(LedgerChange(work_order_id, "failure", "upserted"))

        if newly_pending:
            await NotificationService.notify_discount_confirmation_required(
                db, failure.pending_municipality, failure.suggested_discount, work_order_id
            )

        outcome = SettlementOutcome.FAILED
        if decision.kind == DecisionKind.PENDING_CONFIRMATION:
            outcome = SettlementOutcome.PENDING_CONFIRMATION

        return SettlementResult(
            work_order_id,
            outcome,
            failure_reason=failure.reason,
            message=failure.message,
            missing_fields=list(failure.missing_fields),
        ), changes

    @staticmethod
    async def _evidence(db: AsyncSession, work_order_id: int) -> Optional[WorkOrderEvidence]:
        result = await db.execute(
            select(WorkOrderEvidence).where(WorkOrderEvidence.work_order_id == work_order_id)
        )
        return result.scalar_one_or_none()
