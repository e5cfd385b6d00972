"""
Financial settings (pricing configuration) database model.

A single admin-edited row holding base prices per customer status,
municipality discounts and per-technician price lists.
"""

from typing import Optional
from sqlalchemy import Column, Integer, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.finance_enums import CustomerStatus

# Value of singleton_key for the one settings row
SETTINGS_SINGLETON_KEY = 1


class FinancialSettings(Base):
    """
    Pricing configuration singleton.

    Overwritten in place, no versioning. The unique singleton_key column
    guarantees a single row even when two admins create it concurrently.

    JSON shapes:
        prices_by_customer_status: {"<customer status>": 10000, ...}
        discounts_by_municipality: [{"municipality": "Zemun", "discount_percent": 10}, ...]
        technician_prices: [{"technician_id": 4, "prices_by_customer_status": {...}}, ...]
    """
    __tablename__ = "financial_settings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    singleton_key = Column(Integer, nullable=False, unique=True, default=SETTINGS_SINGLETON_KEY)

    prices_by_customer_status = Column(JSON, nullable=False, default=dict)
    discounts_by_municipality = Column(JSON, nullable=False, default=list)
    technician_prices = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def base_price(self, customer_status: CustomerStatus) -> Optional[float]:
        """Configured price for a customer status, None when unset."""
        return (self.prices_by_customer_status or {}).get(customer_status.value)

    def municipality_discount(self, municipality: str) -> float:
        """Configured discount percent for a municipality, 0 when none."""
        for entry in self.discounts_by_municipality or []:
            if entry.get("municipality") == municipality:
                return entry.get("discount_percent") or 0
        return 0

    def technician_price_list(self, technician_id: int) -> Optional[dict]:
        """Price list of a technician, None when the technician has no entry."""
        for entry in self.technician_prices or []:
            if entry.get("technician_id") == technician_id:
                return entry.get("prices_by_customer_status") or {}
        return None

    def __repr__(self):
        return f"<FinancialSettings(id={self.id}, technicians={len(self.technician_prices or [])})>"
