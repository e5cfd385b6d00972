"""
Audit logging service for tracking admin finance actions.

Provides centralized logging for accountability of who changed what.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    FINANCIAL_SETTINGS_UPDATED = "FINANCIAL_SETTINGS_UPDATED"
    DISCOUNT_CONFIRMED = "DISCOUNT_CONFIRMED"
    WORK_ORDER_VERIFIED = "WORK_ORDER_VERIFIED"
    SETTLEMENT_TRIGGERED = "SETTLEMENT_TRIGGERED"
    SETTLEMENT_RETRIED = "SETTLEMENT_RETRIED"
    SETTLEMENT_FAILURE_RESOLVED = "SETTLEMENT_FAILURE_RESOLVED"
    WORK_ORDER_EXCLUDED = "WORK_ORDER_EXCLUDED"
    RECALCULATION_RUN = "RECALCULATION_RUN"
    REPORT_CACHE_CLEARED = "REPORT_CACHE_CLEARED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> AuditLog:
    """
    Log an admin event to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        actor_username: Username of actor
        target_type: Kind of object acted upon (e.g. "work_order")
        target_id: ID of the object acted upon
        metadata: Additional context as JSON
        ip_address: IP address of the request

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        meta_data=metadata,
        ip_address=ip_address
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def log_admin_action(
    db: AsyncSession,
    current_user: dict,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Log an action performed by the authenticated admin.

    Args:
        db: Database session
        current_user: Token payload from get_current_user
        action: Action performed (use AuditAction constants)
        target_type: Kind of object acted upon
        target_id: ID of the object acted upon
        metadata: Additional context

    Returns:
        Created AuditLog instance
    """
    return await log_event(
        db=db,
        action=action,
        actor_id=current_user.get("user_id"),
        actor_username=current_user.get("sub"),
        target_type=target_type,
        target_id=target_id,
        metadata=metadata
    )


async def get_audit_trail(
    db: AsyncSession,
    target_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Args:
        db: Database session
        target_id: Filter by target object ID
        action: Filter by action type
        limit: Maximum number of records to return

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_id is not None:
        query = query.where(AuditLog.target_id == str(target_id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
