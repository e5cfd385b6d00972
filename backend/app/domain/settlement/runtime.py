"""
Wiring of the settlement components.

Builds the ledger event bus, settlement service, recalculation driver and
reporting aggregator, and subscribes the aggregator's cache invalidation
to ledger changes. Used by the application lifespan and the scripts.
"""

from dataclasses import dataclass

from backend.app.services.cache import build_report_cache
from backend.app.services.reporting import ReportingAggregator
from backend.app.domain.settlement.events import LedgerEventBus
from backend.app.domain.settlement.recalculation import RecalculationDriver
from backend.app.domain.settlement.service import SettlementService


@dataclass
class SettlementComponents:
    events: LedgerEventBus
    settlement: SettlementService
    recalculation: RecalculationDriver
    reporting: ReportingAggregator

    def attach(self, app) -> None:
        """Expose the components on app.state for the request dependencies."""
        app.state.ledger_events = self.events
        app.state.settlement = self.settlement
        app.state.recalculation = self.recalculation
        app.state.reporting = self.reporting


def build_settlement_components(settings, session_factory, redis_client=None) -> SettlementComponents:
    events = LedgerEventBus()
    reporting = ReportingAggregator(build_report_cache(settings, redis_client))
    events.subscribe(reporting.invalidate)

    settlement = SettlementService.from_settings(settings, events)
    recalculation = RecalculationDriver(
        session_factory,
        settlement,
        concurrency=settings.recalculation_concurrency,
    )
    return SettlementComponents(events, settlement, recalculation, reporting)
