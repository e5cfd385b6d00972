"""
Work order and evidence database models.

Owned by dispatch; settlement only reads them (plus the verification flag,
which the verification endpoint sets before triggering settlement).
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.finance_enums import WorkOrderStatus


class WorkOrder(Base):
    """
    Work Order model.

    A single dispatched installation/service job. Eligible for settlement
    exactly when status is COMPLETED and the order is verified.
    """
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Operator reference
    tis_job_id = Column(String(100), nullable=True, index=True)

    date = Column(DateTime(timezone=True), nullable=True)
    municipality = Column(String(255), nullable=False, index=True)
    address = Column(String(500), nullable=True)

    status = Column(Enum(WorkOrderStatus), default=WorkOrderStatus.NOT_COMPLETED, nullable=False, index=True)

    # Verification
    verified = Column(Boolean, default=False, nullable=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    # Assigned technicians (zero, one or two)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True, index=True)
    technician2_id = Column(Integer, ForeignKey("technicians.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def technician_ids(self) -> list:
        """Assigned technician ids in assignment order, without duplicates."""
        ids = []
        for tech_id in (self.technician_id, self.technician2_id):
            if tech_id is not None and tech_id not in ids:
                ids.append(tech_id)
        return ids

    @property
    def is_eligible_for_settlement(self) -> bool:
        return self.status == WorkOrderStatus.COMPLETED and bool(self.verified)

    def __repr__(self):
        return f"<WorkOrder(id={self.id}, tis_job_id='{self.tis_job_id}', status='{self.status.value}')>"


class WorkOrderEvidence(Base):
    """
    Evidence record submitted for a work order.

    Carries the customer status (service type) that drives pricing.
    Stored as free text as submitted; settlement parses it.
    """
    __tablename__ = "work_order_evidence"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, unique=True, index=True)
    customer_status = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<WorkOrderEvidence(id={self.id}, work_order_id={self.work_order_id})>"
