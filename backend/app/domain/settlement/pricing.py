"""
Pricing configuration store.

Singleton financial settings and keyed discount confirmations, each with
an explicit ensure/upsert operation backed by a unique column.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, distinct
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.discount_confirmation import MunicipalityDiscountConfirmation
from backend.app.models.financial_settings import FinancialSettings, SETTINGS_SINGLETON_KEY
from backend.app.models.work_order import WorkOrder


class PricingStore:

    @staticmethod
    async def get_settings(db: AsyncSession) -> Optional[FinancialSettings]:
        """The settings row, or None when it has never been created."""
        result = await db.execute(
            select(FinancialSettings).where(FinancialSettings.singleton_key == SETTINGS_SINGLETON_KEY)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def ensure_settings(db: AsyncSession) -> FinancialSettings:
        """
        Return the settings row, creating an empty one if needed.

        A concurrent creator loses on the unique singleton_key and re-reads.
        """
        settings = await PricingStore.get_settings(db)
        if settings is not None:
            return settings

        settings = FinancialSettings(
            singleton_key=SETTINGS_SINGLETON_KEY,
            prices_by_customer_status={},
            discounts_by_municipality=[],
            technician_prices=[],
        )
        db.add(settings)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return await PricingStore.get_settings(db)
        await db.refresh(settings)
        return settings

    @staticmethod
    async def update_settings(
        db: AsyncSession,
        prices_by_customer_status: Optional[Dict[str, float]] = None,
        discounts_by_municipality: Optional[List[dict]] = None,
        technician_prices: Optional[List[dict]] = None,
    ) -> FinancialSettings:
        """
        Overwrite settings in place.

        Base prices are merged key by key; the discount and technician
        price lists are replaced as a whole.
        """
        settings = await PricingStore.ensure_settings(db)

        if prices_by_customer_status is not None:
            merged = dict(settings.prices_by_customer_status or {})
            merged.update(prices_by_customer_status)
            settings.prices_by_customer_status = merged

        if discounts_by_municipality is not None:
            settings.discounts_by_municipality = list(discounts_by_municipality)

        if technician_prices is not None:
            settings.technician_prices = list(technician_prices)

        settings.updated_at = datetime.utcnow()
        await db.commit()
        await db.refresh(settings)
        return settings

    @staticmethod
    async def get_confirmation(db: AsyncSession, municipality: str) -> Optional[MunicipalityDiscountConfirmation]:
        result = await db.execute(
            select(MunicipalityDiscountConfirmation).where(
                MunicipalityDiscountConfirmation.municipality == municipality
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def upsert_confirmation(
        db: AsyncSession,
        municipality: str,
        discount_percent: float,
        confirmed_by: str,
        confirmed_at: Optional[datetime] = None,
    ) -> MunicipalityDiscountConfirmation:
        """Create or overwrite the confirmation for a municipality, marked confirmed."""
        confirmed_at = confirmed_at or datetime.utcnow()

        for _ in range(2):
            confirmation = await PricingStore.get_confirmation(db, municipality)
            if confirmation is None:
                confirmation = MunicipalityDiscountConfirmation(municipality=municipality)
                db.add(confirmation)

            confirmation.discount_percent = discount_percent
            confirmation.confirmed = True
            confirmation.confirmed_by = confirmed_by
            confirmation.confirmed_at = confirmed_at

            try:
                await db.commit()
            except IntegrityError:
                # Another admin inserted it first; update theirs
                await db.rollback()
                continue
            await db.refresh(confirmation)
            return confirmation

        raise RuntimeError(f"Could not upsert discount confirmation for {municipality}")

    @staticmethod
    async def list_municipalities(db: AsyncSession) -> List[str]:
        """Municipalities that appear on work orders, sorted."""
        result = await db.execute(select(distinct(WorkOrder.municipality)))
        return sorted(m for m in result.scalars().all() if m and m.strip())
