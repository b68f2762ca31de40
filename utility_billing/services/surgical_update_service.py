"""Selective refresh of the aggregated view after a single mutation.

A payment, reversal or credit adjustment only changes one unit, so only
that unit's penalties and view cells are recomputed, from the earliest
affected period forward. The update is idempotent and may be skipped: if
it fails, the cached year is discarded and the next read rebuilds it.
"""

import logging
from datetime import date
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utility_billing.errors import BillingError
from utility_billing.services.aggregation_service import AggregatedViewCache, AggregationBuilder
from utility_billing.services.bill_store import BillStore
from utility_billing.services.currency import Money
from utility_billing.services.penalty_service import PenaltyRecalculationService
from utility_billing.services.periods import Period

logger = logging.getLogger(__name__)


class SurgicalUpdateService:
    """The only writer of unit slices into the aggregated view cache."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: AggregatedViewCache,
        clock: Callable[[], date] = date.today,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock

    async def on_mutation(
        self, client_id: str, fiscal_year: int, unit_id: str, period_id: str
    ) -> bool:
        """Recompute the unit's penalties and its cached cells from ``period_id`` on.

        Returns:
            True if a cached view was updated, False if none was cached or
            the update failed and the cached year was discarded
        """
        try:
            async with self.session_factory() as session:
                summary = await PenaltyRecalculationService(
                    session, self.clock
                ).recalculate_for_units(client_id, [unit_id])
                await BillStore(session).commit()

                if summary.released_credit:
                    # Credit moved; every cached year shows the unit's balance
                    self.cache.invalidate(client_id)
                    return False
                # Only this year's slice is rebuilt here
                for other_year in sorted(
                    {Period.from_id(pid).fiscal_year for _, pid in summary.updated} - {fiscal_year}
                ):
                    self.cache.invalidate(client_id, other_year)

                if (client_id, fiscal_year) not in self.cache:
                    logger.debug(
                        "No cached view for %s FY%d, skipping slice update", client_id, fiscal_year
                    )
                    return False

                # A penalty change in an earlier period moves the starting point back
                start = min(
                    [period_id]
                    + [
                        pid
                        for _, pid in summary.updated
                        if pid.startswith(f"{fiscal_year}-")
                    ]
                )
                unit_slice = await AggregationBuilder(session, self.cache).rebuild_unit(
                    client_id, fiscal_year, unit_id, start
                )
        except BillingError as e:
            logger.warning(
                "Surgical update for %s unit %s FY%d from %s failed, discarding cached view: %s",
                client_id,
                unit_id,
                fiscal_year,
                period_id,
                e,
            )
            self.cache.invalidate(client_id, fiscal_year)
            return False

        updated = self.cache.replace_unit_slice(client_id, fiscal_year, unit_slice)
        logger.debug(
            "Surgical update for %s unit %s FY%d from %s: %s",
            client_id,
            unit_id,
            fiscal_year,
            start,
            "applied" if updated else "view no longer cached",
        )
        return updated

    def refresh_credit(self, client_id: str, unit_id: str, credit_balance: Money) -> int:
        """Propagate a new credit balance to every cached year of the client."""
        updated = self.cache.update_credit(client_id, unit_id, credit_balance)
        logger.debug(
            "Credit for %s unit %s is now %s (%d cached views)",
            client_id,
            unit_id,
            credit_balance,
            updated,
        )
        return updated


__all__ = ["SurgicalUpdateService"]
