"""
Failed financial transaction database model.

Diagnosis of a work order that could not be settled, kept so it can be
retried, resolved or excluded without re-deriving the cause.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Enum, Text, JSON, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.finance_enums import FailureReason


class FailedFinancialTransaction(Base):
    """
    Failed Financial Transaction model.

    At most one row per work order (unique work_order_id). Repeated
    failures update the row and bump attempt_count. Deleted once the work
    order settles. No foreign key on work_order_id: a failure may describe
    a work order that no longer exists.
    """
    __tablename__ = "failed_financial_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, nullable=False, unique=True, index=True)

    failure_reason = Column(Enum(FailureReason), nullable=False, index=True)
    failure_message = Column(Text, nullable=False)
    missing_fields = Column(JSON, nullable=False, default=list)  # [{"field": ..., "description": ...}]
    work_order_details = Column(JSON, nullable=False, default=dict)

    attempt_count = Column(Integer, nullable=False, default=1)
    last_attempt_at = Column(DateTime(timezone=True), nullable=False)

    # Remediation state
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    # Pending discount confirmation
    pending_municipality = Column(String(255), nullable=True, index=True)
    suggested_discount = Column(Float, nullable=False, default=0.0)
    requires_admin_action = Column(Boolean, nullable=False, default=False)

    # Permanently out of settlement scope
    excluded_from_finances = Column(Boolean, nullable=False, default=False, index=True)
    excluded_at = Column(DateTime(timezone=True), nullable=True)
    excluded_by = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_failed_financial_transactions_resolved_created", "resolved", "created_at"),
    )

    def __repr__(self):
        return (
            f"<FailedFinancialTransaction(work_order_id={self.work_order_id}, "
            f"reason='{self.failure_reason.value}', attempts={self.attempt_count})>"
        )
