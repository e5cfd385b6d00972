"""
Technician database model.

Field technicians assigned to work orders, with their pay profile.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.finance_enums import PaymentType


class Technician(Base):
    """
    Technician model.

    Per-job technicians are paid the configured price for every settled job.
    Fixed-salary technicians accrue job earnings towards their monthly salary;
    anything beyond it is company profit.
    """
    __tablename__ = "technicians"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False, index=True)

    # Admin-flagged technician accounts are not listed on finance pages
    is_admin = Column(Boolean, default=False, nullable=False)

    # Pay profile
    payment_type = Column(Enum(PaymentType), default=PaymentType.PER_JOB, nullable=False)
    monthly_salary = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_salaried(self) -> bool:
        return self.payment_type == PaymentType.FIXED_SALARY

    def __repr__(self):
        return f"<Technician(id={self.id}, name='{self.name}', payment_type='{self.payment_type.value}')>"
