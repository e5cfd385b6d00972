"""
Financial transaction database models.

One settlement record per work order, with one earnings row per
assigned technician.
"""

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Enum, ForeignKey, Text, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.finance_enums import CustomerStatus, PaymentType


class FinancialTransaction(Base):
    """
    Financial Transaction model.

    Immutable settlement of a completed, verified work order: what the
    customer owes, what each technician earns and what the company keeps.
    Replaced as a whole on recalculation, never edited in place.
    The unique work_order_id is what keeps concurrent settlements from
    double-booking a payout.
    """
    __tablename__ = "financial_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Linkage
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, unique=True, index=True)
    evidence_id = Column(Integer, ForeignKey("work_order_evidence.id"), nullable=True)
    tis_job_id = Column(String(100), nullable=True)

    # Pricing inputs
    customer_status = Column(Enum(CustomerStatus), nullable=False, index=True)
    municipality = Column(String(255), nullable=False, index=True)

    # Financials
    base_price = Column(Float, nullable=False)
    discount_percent = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    final_price = Column(Float, nullable=False)  # base - discount
    total_technician_earnings = Column(Float, nullable=False)  # per-job pay + salary accrual
    company_profit = Column(Float, nullable=False)  # final - technician earnings

    # Verification
    verified_at = Column(DateTime(timezone=True), nullable=False, index=True)
    verified_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    technicians = relationship(
        "TransactionTechnician",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="TransactionTechnician.position",
    )

    __table_args__ = (
        Index("ix_financial_transactions_verified_municipality", "verified_at", "municipality"),
    )

    def __repr__(self):
        return (
            f"<FinancialTransaction(id={self.id}, work_order_id={self.work_order_id}, "
            f"final={self.final_price}, profit={self.company_profit})>"
        )


class TransactionTechnician(Base):
    """
    Earnings of one technician on one financial transaction.

    earnings is the labour cost charged to the job: the full price for a
    per-job technician, the salary accrual for a fixed-salary technician.
    cash_payout is what is paid out for this job on top of salaries.
    For fixed-salary technicians nominal_earnings is split exactly into
    earned_towards_salary + excess_amount.
    """
    __tablename__ = "transaction_technicians"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    transaction_id = Column(
        Integer, ForeignKey("financial_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    name = Column(String(255), nullable=False)  # Snapshot at settlement time
    payment_type = Column(Enum(PaymentType), nullable=False, default=PaymentType.PER_JOB)

    nominal_earnings = Column(Float, nullable=False)
    earnings = Column(Float, nullable=False)
    cash_payout = Column(Float, nullable=False)

    # Salary accounting (fixed-salary technicians only)
    monthly_salary = Column(Float, nullable=False, default=0.0)
    earned_towards_salary = Column(Float, nullable=False, default=0.0)
    previously_earned = Column(Float, nullable=False, default=0.0)
    exceeded_salary = Column(Boolean, nullable=False, default=False)
    excess_amount = Column(Float, nullable=False, default=0.0)

    transaction = relationship("FinancialTransaction", back_populates="technicians")

    def __repr__(self):
        return f"<TransactionTechnician(technician_id={self.technician_id}, earnings={self.earnings})>"
