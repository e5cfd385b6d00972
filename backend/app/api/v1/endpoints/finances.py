"""
Finance API Endpoints.

Pricing settings, settlement remediation, discount confirmation,
recalculation and financial reports. Super admins only.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import date
from typing import List, Optional

from backend.app.db.session import get_db
from backend.app.core.guards import require_superadmin
from backend.app.core.dependencies import get_settlement_service, get_recalculation, get_reporting
from backend.app.core.exceptions import ResourceNotFoundError, SettlementConflictError
from backend.app.models.finance_enums import CustomerStatus, FailureReason
from backend.app.models.technician import Technician
from backend.app.schemas.finance import (
    FinancialSettingsUpdate, FinancialSettingsResponse, CustomerStatusOption, TechnicianResponse,
    SettlementResultResponse, RecalculationRequest, RecalculationReportResponse,
    FailedTransactionResponse, PendingConfirmationResponse,
    DiscountConfirmationRequest, DiscountConfirmationResponse, FinanceReportResponse,
    AuditLogResponse, AuditTrailResponse,
)
from backend.app.services.audit import log_admin_action, AuditAction, get_audit_trail
from backend.app.domain.settlement.discounts import confirm_discount, pending_confirmations
from backend.app.domain.settlement.ledgers import FailureLedger
from backend.app.domain.settlement.pricing import PricingStore

router = APIRouter(prefix="/finances", tags=["Finances"])


# --- Settings ---

@router.get("/settings", response_model=FinancialSettingsResponse)
async def get_financial_settings(
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Current pricing configuration, created empty on first access."""
    return await PricingStore.ensure_settings(db)


@router.post("/settings", response_model=FinancialSettingsResponse)
async def update_financial_settings(
    update: FinancialSettingsUpdate,
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """
    Update pricing configuration.

    Base prices are merged per customer status; discount and technician
    price lists replace the stored ones. Existing transactions are not
    touched; run a recalculation to apply new prices to them.
    """
    price_maps = []
    if update.prices_by_customer_status is not None:
        price_maps.append(update.prices_by_customer_status)
    for entry in update.technician_prices or []:
        price_maps.append(entry.prices_by_customer_status)

    for prices in price_maps:
        for key, price in prices.items():
            if CustomerStatus.parse(key) is None:
                raise HTTPException(status_code=400, detail=f"Unknown customer status: {key}")
            if price is None or price < 0:
                raise HTTPException(status_code=400, detail=f"Invalid price for {key}")

    municipalities = [d.municipality for d in update.discounts_by_municipality or []]
    if len(municipalities) != len(set(municipalities)):
        raise HTTPException(status_code=400, detail="Duplicate municipality in discounts")

    settings = await PricingStore.update_settings(
        db,
        prices_by_customer_status=update.prices_by_customer_status,
        discounts_by_municipality=(
            [d.model_dump() for d in update.discounts_by_municipality]
            if update.discounts_by_municipality is not None else None
        ),
        technician_prices=(
            [t.model_dump() for t in update.technician_prices]
            if update.technician_prices is not None else None
        ),
    )

    await log_admin_action(
        db, current_user,
        action=AuditAction.FINANCIAL_SETTINGS_UPDATED,
        target_type="financial_settings",
        target_id=settings.id,
        metadata=update.model_dump(exclude_unset=True),
    )
    return settings


@router.get("/customer-status-options", response_model=List[CustomerStatusOption])
async def list_customer_status_options(
    current_user: dict = Depends(require_superadmin),
):
    """All customer statuses with their short labels."""
    return [CustomerStatusOption(value=s.value, label=s.label) for s in CustomerStatus]


@router.get("/municipalities", response_model=List[str])
async def list_municipalities(
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Municipalities known from work orders."""
    return await PricingStore.list_municipalities(db)


@router.get("/technicians", response_model=List[TechnicianResponse])
async def list_technicians(
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Technicians that can have price lists (admin accounts excluded)."""
    result = await db.execute(
        select(Technician).where(Technician.is_admin == False).order_by(Technician.name)
    )
    return result.scalars().all()


# --- Reports ---

@router.get("/reports", response_model=FinanceReportResponse)
async def get_financial_report(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    technician_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    reporting=Depends(get_reporting)
):
    """Totals, per-technician stats and a page of transactions."""
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to")

    return await reporting.summary(
        db,
        date_from=date_from,
        date_to=date_to,
        search=search,
        technician_id=technician_id,
        page=page,
        page_size=page_size,
    )


@router.post("/reports/cache/clear")
async def clear_report_cache(
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    reporting=Depends(get_reporting)
):
    """Drop all cached reports."""
    await reporting.clear()
    await log_admin_action(db, current_user, action=AuditAction.REPORT_CACHE_CLEARED)
    return {"status": "success"}


# --- Failures ---

@router.get("/failed-transactions", response_model=List[FailedTransactionResponse])
async def list_failed_transactions(
    reason: Optional[FailureReason] = Query(None),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Unresolved settlement failures, newest first."""
    return await FailureLedger.list_unresolved(db, reason)


@router.get("/pending-confirmations", response_model=List[PendingConfirmationResponse])
async def list_pending_confirmations(
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Municipality discounts waiting for confirmation, with the work orders they block."""
    return await pending_confirmations(db)


@router.post("/failed-transactions/{work_order_id}/retry", response_model=SettlementResultResponse)
async def retry_failed_transaction(
    work_order_id: int = Path(...),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    recalculation=Depends(get_recalculation)
):
    """Recalculate one work order from scratch."""
    record = await FailureLedger.get(db, work_order_id)
    if record is not None and record.excluded_from_finances:
        raise SettlementConflictError(
            f"Work order {work_order_id} is excluded from finances", work_order_id=work_order_id
        )

    result = await recalculation.recalculate_work_order(work_order_id)

    await log_admin_action(
        db, current_user,
        action=AuditAction.SETTLEMENT_RETRIED,
        target_type="work_order",
        target_id=work_order_id,
        metadata={"outcome": result.outcome.value},
    )
    return result.as_dict()


@router.post("/failed-transactions/{work_order_id}/resolve", response_model=FailedTransactionResponse)
async def resolve_failed_transaction(
    work_order_id: int = Path(...),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    settlement=Depends(get_settlement_service)
):
    """Mark a failure as handled; it leaves the remediation list."""
    record = await settlement.resolve_failure(db, work_order_id)
    if record is None:
        raise ResourceNotFoundError("Failed transaction", work_order_id)

    await log_admin_action(
        db, current_user,
        action=AuditAction.SETTLEMENT_FAILURE_RESOLVED,
        target_type="work_order",
        target_id=work_order_id,
    )
    return record


@router.post("/work-orders/{work_order_id}/exclude", response_model=FailedTransactionResponse)
async def exclude_work_order(
    work_order_id: int = Path(...),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    settlement=Depends(get_settlement_service)
):
    """Permanently exclude a work order from finances."""
    record = await settlement.exclude_work_order(db, work_order_id, excluded_by=current_user["name"])

    await log_admin_action(
        db, current_user,
        action=AuditAction.WORK_ORDER_EXCLUDED,
        target_type="work_order",
        target_id=work_order_id,
    )
    return record


# --- Settlement ---

@router.post("/work-orders/{work_order_id}/settle", response_model=SettlementResultResponse)
async def settle_work_order(
    work_order_id: int = Path(...),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    settlement=Depends(get_settlement_service)
):
    """Settle one work order, keeping an existing transaction when nothing changed."""
    result = await settlement.settle_work_order(db, work_order_id, verified_by=current_user["name"])

    await log_admin_action(
        db, current_user,
        action=AuditAction.SETTLEMENT_TRIGGERED,
        target_type="work_order",
        target_id=work_order_id,
        metadata={"outcome": result.outcome.value},
    )
    return result.as_dict()


@router.post("/confirm-discount", response_model=DiscountConfirmationResponse)
async def confirm_municipality_discount(
    request: DiscountConfirmationRequest,
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    recalculation=Depends(get_recalculation)
):
    """
    Confirm a municipality discount.

    Recalculates the given work orders, or every work order waiting on
    this municipality's confirmation when none are given.
    """
    try:
        confirmation, report = await confirm_discount(
            db,
            recalculation,
            municipality=request.municipality.strip(),
            discount_percent=request.discount_percent,
            confirmed_by=current_user["name"],
            work_order_ids=request.work_order_ids,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    await log_admin_action(
        db, current_user,
        action=AuditAction.DISCOUNT_CONFIRMED,
        target_type="municipality",
        target_id=confirmation.municipality,
        metadata={
            "discount_percent": confirmation.discount_percent,
            "recalculated": report.processed,
            "created": report.created,
        },
    )

    return {
        "municipality": confirmation.municipality,
        "discount_percent": confirmation.discount_percent,
        "confirmed": confirmation.confirmed,
        "confirmed_by": confirmation.confirmed_by,
        "confirmed_at": confirmation.confirmed_at,
        "recalculation": report.as_dict(),
    }


@router.post("/recalculate", response_model=RecalculationReportResponse)
async def recalculate(
    request: RecalculationRequest,
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
    recalculation=Depends(get_recalculation)
):
    """Recalculate the listed work orders, or run the full sweep when none are listed."""
    if request.work_order_ids is None:
        report = await recalculation.recalculate_all_eligible()
    else:
        report = await recalculation.recalculate_work_orders(request.work_order_ids)

    await log_admin_action(
        db, current_user,
        action=AuditAction.RECALCULATION_RUN,
        target_type="work_order",
        metadata={
            "scope": "all" if request.work_order_ids is None else "list",
            "processed": report.processed,
            "failed": report.failed,
        },
    )
    return report.as_dict()


# --- Audit ---

@router.get("/audit-logs", response_model=AuditTrailResponse)
async def get_finance_audit_logs(
    target_id: Optional[str] = Query(None, description="Filter by target id, e.g. a work order id"),
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db)
):
    """Recent finance admin actions, newest first."""
    logs = await get_audit_trail(db, target_id=target_id, action=action, limit=limit)
    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs)
    )
