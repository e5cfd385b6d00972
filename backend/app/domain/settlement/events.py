"""
Ledger event bus.

The ledger write path emits an event after every committed change to the
transaction or failure ledger. Subscribers (the reporting aggregator's
cache invalidation) register callbacks at application startup.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerChange:
    work_order_id: int
    ledger: str  # "transaction" or "failure"
    action: str  # "created", "replaced", "reaccrued", "deleted", "upserted", "resolved", "excluded"

    @property
    def affects_totals(self) -> bool:
        return self.ledger == "transaction"


LedgerListener = Callable[[LedgerChange], Awaitable[None]]


class LedgerEventBus:
    """Fan-out of ledger changes to async listeners."""

    def __init__(self):
        self._listeners: List[LedgerListener] = []

    def subscribe(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    async def emit(self, change: LedgerChange) -> None:
        # A failing listener must not undo or hide a committed ledger write
        for listener in self._listeners:
            try:
                await listener(change)
            except Exception:
                logger.exception("Ledger listener failed for %s", change)
