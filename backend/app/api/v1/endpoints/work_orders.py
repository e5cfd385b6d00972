"""
Work Order API Endpoints.

Verification of completed work orders, which triggers settlement.
"""

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime

from backend.app.db.session import get_db
from backend.app.core.guards import require_admin
from backend.app.core.dependencies import get_settlement_service
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.finance_enums import WorkOrderStatus
from backend.app.models.work_order import WorkOrder
from backend.app.schemas.finance import WorkOrderVerifyResponse
from backend.app.services.audit import log_admin_action, AuditAction

router = APIRouter(prefix="/work-orders", tags=["Work Orders"])


@router.post("/{work_order_id}/verify", response_model=WorkOrderVerifyResponse)
async def verify_work_order(
    work_order_id: int = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    settlement=Depends(get_settlement_service)
):
    """
    Verify a completed work order and settle it.

    Verifying twice keeps the original verification time; settlement is
    idempotent, so the second call reports UNCHANGED.
    """
    work_order = await db.get(WorkOrder, work_order_id)
    if not work_order:
        raise ResourceNotFoundError("Work order", work_order_id)

    if work_order.status != WorkOrderStatus.COMPLETED:
        raise HTTPException(
            status_code=400,
            detail=f"Only completed work orders can be verified. Current status: {work_order.status.value}"
        )

    if not work_order.verified:
        work_order.verified = True
        work_order.verified_at = datetime.utcnow()
        await db.commit()

        await log_admin_action(
            db, current_user,
            action=AuditAction.WORK_ORDER_VERIFIED,
            target_type="work_order",
            target_id=work_order_id,
        )

    result = await settlement.settle_work_order(db, work_order_id, verified_by=current_user["name"])

    return {
        "work_order_id": work_order.id,
        "verified": work_order.verified,
        "verified_at": work_order.verified_at,
        "settlement": result.as_dict(),
    }
