"""Water bill generation and bill listings."""

import logging
from datetime import date
from typing import Callable, NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utility_billing.config import Settings
from utility_billing.errors import ValidationError
from utility_billing.models.bill import BillStatus, WaterBill, derive_status
from utility_billing.services.aggregation_service import AggregatedViewCache
from utility_billing.services.bill_store import BillStore
from utility_billing.services.concurrency import run_in_transaction
from utility_billing.services.config_service import BillingConfig, ConfigService
from utility_billing.services.currency import Money
from utility_billing.services.penalty_service import PenaltyRecalcSummary, PenaltyRecalculationService
from utility_billing.services.periods import Period

logger = logging.getLogger(__name__)


class BillSnapshot(NamedTuple):
    """Detached, read-only view of one bill."""

    unit_id: str
    period_id: str
    label: str
    due_date: date
    consumption: int | None
    base_charge: Money
    penalty_amount: Money
    previous_balance_carry: Money
    total_owed: Money
    paid_amount: Money
    outstanding: Money
    unpaid_penalty: Money
    status: BillStatus

    @classmethod
    def from_bill(cls, bill: WaterBill, start_month: int = 7) -> "BillSnapshot":
        return cls(
            unit_id=bill.unit_id,
            period_id=bill.period_id,
            label=Period.from_id(bill.period_id, start_month).label,
            due_date=bill.due_date,
            consumption=bill.consumption,
            base_charge=Money(bill.base_charge),
            penalty_amount=Money(bill.penalty_amount),
            previous_balance_carry=Money(bill.previous_balance_carry),
            total_owed=bill.total_owed,
            paid_amount=Money(bill.paid_amount),
            outstanding=bill.outstanding,
            unpaid_penalty=bill.unpaid_penalty,
            status=BillStatus(bill.status),
        )


class GenerationResult(NamedTuple):
    period_id: str
    created: list[str]
    skipped_existing: list[str]
    skipped_no_charge: list[str]
    replaced: int


def compute_charge(consumption: int, config: BillingConfig) -> Money:
    """Consumption charge with the configured minimum applied."""
    charge = Money(consumption * config.rate_per_m3.centavos)
    return max(charge, config.minimum_charge)


class BillsService:
    """Generate and list water bills for a client."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: AggregatedViewCache,
        clock: Callable[[], date] = date.today,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock
        self.settings = settings

    async def generate_bills(
        self,
        client_id: str,
        fiscal_year: int,
        fiscal_month: int,
        opening_balances: dict[str, Money] | None = None,
        regenerate: bool = False,
    ) -> GenerationResult:
        """Create one bill per unit with a reading for the period.

        Bills that already exist are left alone unless ``regenerate`` is set,
        in which case the period's bills are deleted and created again; this
        is refused once any of them has a payment.

        Args:
            client_id: Client to bill
            fiscal_year: Fiscal year of the period
            fiscal_month: Zero-based fiscal month
            opening_balances: Arrears per unit carried onto the new bill
            regenerate: Replace the period's existing bills

        Raises:
            ValidationError: On negative consumption, negative opening
                balances or regeneration over paid bills
            NotFoundError: If the client has no billing configuration
        """
        opening_balances = opening_balances or {}
        for unit_id, amount in opening_balances.items():
            if amount.is_negative():
                raise ValidationError(f"Opening balance for unit {unit_id} must not be negative")

        async def work(session: AsyncSession) -> GenerationResult:
            return await self._generate(
                session, client_id, fiscal_year, fiscal_month, opening_balances, regenerate
            )

        result = await run_in_transaction(
            self.session_factory,
            work,
            f"generate bills {client_id} {fiscal_year}-{fiscal_month:02d}",
            self.settings,
        )
        self.cache.invalidate(client_id, fiscal_year)

        logger.info(
            "Generated water bills for %s %s: created=%d existing=%d no_charge=%d replaced=%d",
            client_id,
            result.period_id,
            len(result.created),
            len(result.skipped_existing),
            len(result.skipped_no_charge),
            result.replaced,
        )
        return result

    async def _generate(
        self,
        session: AsyncSession,
        client_id: str,
        fiscal_year: int,
        fiscal_month: int,
        opening_balances: dict[str, Money],
        regenerate: bool,
    ) -> GenerationResult:
        store = BillStore(session)
        config = await ConfigService(session).get_config(client_id)
        period = Period(fiscal_year, fiscal_month, config.fiscal_year_start_month)

        # Bring existing penalties up to date before adding the new period
        await PenaltyRecalculationService(session, self.clock).recalculate_for_client(client_id)

        existing = {b.unit_id: b for b in await store.list_bills_for_period(client_id, period.period_id)}
        replaced = 0
        if existing and regenerate:
            paid_units = sorted(unit for unit, bill in existing.items() if bill.payments)
            if paid_units:
                raise ValidationError(
                    f"Cannot regenerate {period.label} bills: payments exist for units "
                    + ", ".join(paid_units)
                )
            for bill in existing.values():
                await store.delete_bill(bill)
            await store.flush()
            replaced = len(existing)
            existing = {}

        prior_period = period.previous()
        readings = await store.list_readings_for_periods(
            client_id, [prior_period.period_id, period.period_id]
        )
        current = {r.unit_id: r for r in readings if r.period_id == period.period_id}
        prior = {r.unit_id: r for r in readings if r.period_id == prior_period.period_id}

        created, skipped_existing, skipped_no_charge = [], [], []
        for unit_id in sorted(current):
            if unit_id in existing:
                skipped_existing.append(unit_id)
                continue
            reading = current[unit_id]
            previous = prior.get(unit_id)
            # First reading of a meter: nothing to compare against yet
            consumption = reading.reading - previous.reading if previous else 0
            if consumption < 0:
                raise ValidationError(
                    f"Unit {unit_id} reading {reading.reading} is below the prior reading "
                    f"{previous.reading} for {period.label}"
                )

            charge = compute_charge(consumption, config) if previous else Money(0)
            carry = opening_balances.get(unit_id, Money(0))
            if not charge.is_positive() and not carry.is_positive():
                skipped_no_charge.append(unit_id)
                continue

            bill = WaterBill(
                client_id=client_id,
                fiscal_year=fiscal_year,
                period_id=period.period_id,
                unit_id=unit_id,
                due_date=period.due_date(config.due_day),
                prior_reading=previous.reading if previous else None,
                current_reading=reading.reading,
                consumption=consumption,
                base_charge=charge.centavos,
                penalty_amount=0,
                previous_balance_carry=carry.centavos,
                paid_amount=0,
                carry_paid=0,
                base_paid=0,
                penalty_paid=0,
                status=derive_status(0, charge.centavos + carry.centavos),
                payments=[],
            )
            store.add_bill(bill)
            created.append(unit_id)
            logger.debug(
                "Bill %s unit %s: %s m3, charge %s, carry %s",
                period.period_id,
                unit_id,
                consumption,
                charge,
                carry,
            )

        await store.flush()
        return GenerationResult(
            period_id=period.period_id,
            created=created,
            skipped_existing=skipped_existing,
            skipped_no_charge=skipped_no_charge,
            replaced=replaced,
        )

    async def recalculate_penalties(
        self,
        client_id: str,
        as_of: date | None = None,
        unit_ids: list[str] | None = None,
    ) -> PenaltyRecalcSummary:
        """Recalculate stored penalties as one retried unit of work.

        A payment committing on the same bills makes the attempt stale; it is
        then run again on fresh rows.

        Raises:
            ValidationError: If ``unit_ids`` is given but empty
            NotFoundError: If the client has no billing configuration
            ConcurrentModificationError: If retries were exhausted
        """

        async def work(session: AsyncSession) -> PenaltyRecalcSummary:
            service = PenaltyRecalculationService(session, self.clock)
            if unit_ids is not None:
                return await service.recalculate_for_units(client_id, unit_ids, as_of)
            return await service.recalculate_for_client(client_id, as_of)

        summary = await run_in_transaction(
            self.session_factory, work, f"recalculate penalties {client_id}", self.settings
        )
        if summary.updated_bills or summary.released_credit:
            self.cache.invalidate(client_id)
        return summary

    async def get_bills(self, client_id: str, fiscal_year: int, fiscal_month: int) -> list[BillSnapshot]:
        async with self.session_factory() as session:
            config = await ConfigService(session).get_config(client_id)
            period = Period(fiscal_year, fiscal_month, config.fiscal_year_start_month)
            bills = await BillStore(session).list_bills_for_period(client_id, period.period_id)
            return [BillSnapshot.from_bill(b, config.fiscal_year_start_month) for b in bills]


__all__ = ["BillsService", "BillSnapshot", "GenerationResult", "compute_charge"]
