"""
Municipality discount confirmation database model.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from sqlalchemy.sql import func
from backend.app.db.session import Base


class MunicipalityDiscountConfirmation(Base):
    """
    Admin confirmation of a municipality discount.

    A discount configured in FinancialSettings is only applied once a
    confirmed row exists for the municipality; until then it is a
    suggestion and settlement stalls as pending confirmation.
    """
    __tablename__ = "municipality_discount_confirmations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    municipality = Column(String(255), nullable=False, unique=True, index=True)

    discount_percent = Column(Float, nullable=False, default=0.0)
    confirmed = Column(Boolean, nullable=False, default=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(String(255), nullable=True)  # Admin name

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<MunicipalityDiscountConfirmation(municipality='{self.municipality}', "
            f"percent={self.discount_percent}, confirmed={self.confirmed})>"
        )
