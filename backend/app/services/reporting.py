"""
Financial reporting service.

Read-only aggregation over the transaction ledger for the finance
dashboard: totals, per-technician stats and a paginated listing, behind
a short-lived cache that any ledger write clears.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, or_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.finance_enums import CustomerStatus
from backend.app.models.financial_transaction import FinancialTransaction, TransactionTechnician
from backend.app.services.cache import ReportCache, MemoryCacheBackend, make_cache_key
from backend.app.domain.settlement.events import LedgerChange

logger = logging.getLogger(__name__)

REPORT_NAMESPACE = "finance-report"


def matching_customer_statuses(search: str) -> List[CustomerStatus]:
    """Customer statuses whose stored value or short label contains the search text."""
    needle = search.lower()
    return [s for s in CustomerStatus if needle in s.value.lower() or needle in s.label.lower()]


def serialize_transaction(transaction: FinancialTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "work_order_id": transaction.work_order_id,
        "tis_job_id": transaction.tis_job_id,
        "customer_status": transaction.customer_status.value,
        "customer_status_label": transaction.customer_status.label,
        "municipality": transaction.municipality,
        "base_price": transaction.base_price,
        "discount_percent": transaction.discount_percent,
        "discount_amount": transaction.discount_amount,
        "final_price": transaction.final_price,
        "total_technician_earnings": transaction.total_technician_earnings,
        "company_profit": transaction.company_profit,
        "verified_at": transaction.verified_at.isoformat() if transaction.verified_at else None,
        "verified_by": transaction.verified_by,
        "technicians": [
            {
                "technician_id": t.technician_id,
                "name": t.name,
                "payment_type": t.payment_type.value,
                "nominal_earnings": t.nominal_earnings,
                "earnings": t.earnings,
                "cash_payout": t.cash_payout,
                "monthly_salary": t.monthly_salary,
                "earned_towards_salary": t.earned_towards_salary,
                "previously_earned": t.previously_earned,
                "exceeded_salary": t.exceeded_salary,
                "excess_amount": t.excess_amount,
            }
            for t in transaction.technicians
        ],
    }


class ReportingAggregator:
    """
    Answers finance report queries.

    Owns its cache. Subscribe `invalidate` to the ledger event bus so
    every ledger write that changes totals clears it.
    """

    def __init__(self, cache: Optional[ReportCache] = None):
        self.cache = cache or ReportCache(MemoryCacheBackend())

    async def invalidate(self, change: LedgerChange) -> None:
        if change.affects_totals:
            await self.cache.clear()

    async def clear(self) -> None:
        await self.cache.clear()

    @staticmethod
    def _filters(
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        search: Optional[str] = None,
        technician_id: Optional[int] = None,
    ) -> list:
        conditions = []

        if date_from:
            conditions.append(FinancialTransaction.verified_at >= datetime.combine(date_from, time.min))
        if date_to:
            # Inclusive end of day
            conditions.append(
                FinancialTransaction.verified_at < datetime.combine(date_to + timedelta(days=1), time.min)
            )

        if technician_id is not None:
            conditions.append(FinancialTransaction.technicians.any(
                TransactionTechnician.technician_id == technician_id
            ))

        if search and search.strip():
            pattern = f"%{search.strip()}%"
            alternatives = [
                FinancialTransaction.tis_job_id.ilike(pattern),
                FinancialTransaction.municipality.ilike(pattern),
                FinancialTransaction.technicians.any(TransactionTechnician.name.ilike(pattern)),
            ]
            statuses = matching_customer_statuses(search.strip())
            if statuses:
                alternatives.append(FinancialTransaction.customer_status.in_(statuses))
            conditions.append(or_(*alternatives))

        return conditions

    async def summary(
        self,
        db: AsyncSession,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        search: Optional[str] = None,
        technician_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Finance report for the given filters.

        Returns:
            {"summary": {...}, "technician_stats": [...],
             "transactions": [...], "pagination": {...}}
        """
        params = {
            "date_from": date_from,
            "date_to": date_to,
            "search": search.strip() if search else None,
            "technician_id": technician_id,
            "page": page,
            "page_size": page_size,
        }
        key = make_cache_key(REPORT_NAMESPACE, params)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        conditions = self._filters(date_from, date_to, search, technician_id)

        # 1. Totals
        totals_query = select(
            func.count(FinancialTransaction.id),
            func.coalesce(func.sum(FinancialTransaction.final_price), 0.0),
            func.coalesce(func.sum(FinancialTransaction.total_technician_earnings), 0.0),
            func.coalesce(func.sum(FinancialTransaction.company_profit), 0.0),
            func.coalesce(func.sum(FinancialTransaction.discount_amount), 0.0),
        ).where(*conditions)
        count, revenue, payouts, profit, discounts = (await db.execute(totals_query)).one()

        filtered_ids = select(FinancialTransaction.id).where(*conditions)

        # 2. Cash actually paid per job (salaried accruals are covered by salaries)
        cash_query = select(
            func.coalesce(func.sum(TransactionTechnician.cash_payout), 0.0),
            func.coalesce(func.sum(TransactionTechnician.excess_amount), 0.0),
        ).where(TransactionTechnician.transaction_id.in_(filtered_ids))
        cash_payouts, excess = (await db.execute(cash_query)).one()

        # 3. Per technician
        stats_query = select(
            TransactionTechnician.technician_id,
            func.max(TransactionTechnician.name).label("name"),
            func.count(func.distinct(TransactionTechnician.transaction_id)).label("work_orders_count"),
            func.coalesce(func.sum(TransactionTechnician.earnings), 0.0).label("total_earnings"),
            func.coalesce(func.sum(TransactionTechnician.cash_payout), 0.0).label("total_cash_payout"),
            func.coalesce(func.sum(TransactionTechnician.earned_towards_salary), 0.0).label("earned_towards_salary"),
            func.coalesce(func.sum(TransactionTechnician.excess_amount), 0.0).label("excess_amount"),
        ).where(
            TransactionTechnician.transaction_id.in_(filtered_ids)
        ).group_by(TransactionTechnician.technician_id).order_by(TransactionTechnician.technician_id)

        technician_stats = [
            {
                "technician_id": row.technician_id,
                "name": row.name,
                "work_orders_count": row.work_orders_count,
                "total_earnings": round(row.total_earnings, 2),
                "total_cash_payout": round(row.total_cash_payout, 2),
                "earned_towards_salary": round(row.earned_towards_salary, 2),
                "excess_amount": round(row.excess_amount, 2),
            }
            for row in await db.execute(stats_query)
        ]

        # 4. Page of transactions, newest first
        page = max(page, 1)
        page_size = max(page_size, 1)
        page_query = (
            select(FinancialTransaction)
            .where(*conditions)
            .order_by(desc(FinancialTransaction.verified_at), desc(FinancialTransaction.id))
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        transactions = (await db.execute(page_query)).scalars().all()

        report = {
            "summary": {
                "total_revenue": round(revenue, 2),
                "total_payouts": round(payouts, 2),
                "total_cash_payouts": round(cash_payouts, 2),
                "total_profit": round(profit, 2),
                "total_discounts": round(discounts, 2),
                "total_salary_excess": round(excess, 2),
                "transactions_count": count,
            },
            "technician_stats": technician_stats,
            "transactions": [serialize_transaction(t) for t in transactions],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": count,
                "pages": math.ceil(count / page_size) if count else 0,
            },
        }

        await self.cache.set(key, report)
        return report
