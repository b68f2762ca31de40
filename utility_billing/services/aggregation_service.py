"""Aggregated water-bill view: per fiscal year, per unit, per period.

The view is a read model derived only from bills, meter readings and credit
balances. It is built wholesale on first access and afterwards updated one
unit slice at a time by the surgical update service. Discarding it is always
safe; the next read rebuilds it.

Display fields per cell:
- ``display_due``: what is still owed on that period's bill
- ``display_penalties``: unpaid penalty on that bill
- ``display_overdue``: sum of ``display_due`` of the unit's earlier periods
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from utility_billing.models.bill import BillStatus, WaterBill
from utility_billing.models.credit_balance import CreditBalance
from utility_billing.models.meter_reading import MeterReading
from utility_billing.services.bill_store import BillStore
from utility_billing.services.config_service import ConfigService
from utility_billing.services.currency import Money, sum_money
from utility_billing.services.periods import Period, fiscal_year_periods

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodCell:
    period_id: str
    label: str
    status: BillStatus
    due_date: date | None
    prior_reading: int | None
    current_reading: int | None
    consumption: int | None
    base_charge: Money
    penalty_amount: Money
    previous_balance_carry: Money
    paid_amount: Money
    penalty_paid: Money
    display_due: Money
    display_penalties: Money
    display_overdue: Money

    @property
    def total_owed(self) -> Money:
        return self.base_charge + self.penalty_amount + self.previous_balance_carry

    @property
    def display_total_due(self) -> Money:
        return self.display_due + self.display_overdue


@dataclass(frozen=True)
class UnitSlice:
    """All cells of one unit for one fiscal year, oldest period first."""

    unit_id: str
    cells: tuple[PeriodCell, ...]
    credit_balance: Money = Money(0)

    def cell(self, period_id: str) -> PeriodCell | None:
        for cell in self.cells:
            if cell.period_id == period_id:
                return cell
        return None

    @property
    def total_billed(self) -> Money:
        return sum_money(c.total_owed for c in self.cells)

    @property
    def total_paid(self) -> Money:
        return sum_money(c.paid_amount for c in self.cells)

    @property
    def total_due(self) -> Money:
        """Latest cell's total due, i.e. every unpaid amount of the year."""
        return self.cells[-1].display_total_due if self.cells else Money(0)

    @property
    def has_overdue(self) -> bool:
        return bool(self.cells) and self.cells[-1].display_overdue.is_positive()

    def with_credit(self, credit_balance: Money) -> "UnitSlice":
        return replace(self, credit_balance=credit_balance)


@dataclass(frozen=True)
class YearSummary:
    total_billed: Money
    total_paid: Money
    total_unpaid: Money
    total_credit: Money
    units_with_overdue: int
    collection_rate: Decimal
    """Paid as a percentage of billed, one decimal place"""


def summarize(slices: Iterable[UnitSlice]) -> YearSummary:
    slices = list(slices)
    billed = sum_money(s.total_billed for s in slices)
    paid = sum_money(s.total_paid for s in slices)
    rate = Decimal(0)
    if billed.is_positive():
        rate = (Decimal(paid.centavos) * 100 / Decimal(billed.centavos)).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
    return YearSummary(
        total_billed=billed,
        total_paid=paid,
        total_unpaid=sum_money(s.total_due for s in slices),
        total_credit=sum_money(s.credit_balance for s in slices),
        units_with_overdue=sum(1 for s in slices if s.has_overdue),
        collection_rate=rate,
    )


@dataclass
class AggregatedView:
    client_id: str
    fiscal_year: int
    periods: tuple[Period, ...]
    units: dict[str, UnitSlice]
    summary: YearSummary
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime | None = None

    def replace_unit(self, unit_slice: UnitSlice) -> None:
        self.units[unit_slice.unit_id] = unit_slice
        self.units = dict(sorted(self.units.items()))
        self.summary = summarize(self.units.values())
        self.updated_at = datetime.now(timezone.utc)


class AggregatedViewCache:
    """In-process cache of aggregated views keyed by (client_id, fiscal_year)."""

    def __init__(self):
        self._views: dict[tuple[str, int], AggregatedView] = {}

    def get(self, client_id: str, fiscal_year: int) -> AggregatedView | None:
        return self._views.get((client_id, fiscal_year))

    def put(self, view: AggregatedView) -> None:
        self._views[(view.client_id, view.fiscal_year)] = view

    def invalidate(self, client_id: str, fiscal_year: int | None = None) -> None:
        """Drop one year of a client, or every year when ``fiscal_year`` is None."""
        keys = [
            key
            for key in self._views
            if key[0] == client_id and (fiscal_year is None or key[1] == fiscal_year)
        ]
        for key in keys:
            del self._views[key]
        if keys:
            logger.debug("Invalidated aggregated views %s", keys)

    def replace_unit_slice(self, client_id: str, fiscal_year: int, unit_slice: UnitSlice) -> bool:
        """Swap in a rebuilt unit slice. Returns False if the year is not cached."""
        view = self.get(client_id, fiscal_year)
        if view is None:
            return False
        view.replace_unit(unit_slice)
        return True

    def update_credit(self, client_id: str, unit_id: str, credit_balance: Money) -> int:
        """Refresh a unit's credit in every cached year of the client."""
        updated = 0
        for (cached_client, _), view in self._views.items():
            if cached_client != client_id or unit_id not in view.units:
                continue
            view.replace_unit(view.units[unit_id].with_credit(credit_balance))
            updated += 1
        return updated

    def __contains__(self, key: tuple[str, int]) -> bool:
        return key in self._views

    def __len__(self) -> int:
        return len(self._views)


def _make_cell(
    period: Period,
    bill: WaterBill | None,
    reading: MeterReading | None,
    prior: MeterReading | None,
    overdue: Money,
) -> PeriodCell:
    if bill is None:
        consumption = None
        if reading is not None and prior is not None:
            consumption = reading.reading - prior.reading
        return PeriodCell(
            period_id=period.period_id,
            label=period.label,
            status=BillStatus.NO_BILL,
            due_date=None,
            prior_reading=prior.reading if prior else None,
            current_reading=reading.reading if reading else None,
            consumption=consumption,
            base_charge=Money(0),
            penalty_amount=Money(0),
            previous_balance_carry=Money(0),
            paid_amount=Money(0),
            penalty_paid=Money(0),
            display_due=Money(0),
            display_penalties=Money(0),
            display_overdue=overdue,
        )

    return PeriodCell(
        period_id=period.period_id,
        label=period.label,
        status=BillStatus(bill.status),
        due_date=bill.due_date,
        prior_reading=bill.prior_reading,
        current_reading=bill.current_reading,
        consumption=bill.consumption,
        base_charge=Money(bill.base_charge),
        penalty_amount=Money(bill.penalty_amount),
        previous_balance_carry=Money(bill.previous_balance_carry),
        paid_amount=Money(bill.paid_amount),
        penalty_paid=Money(bill.penalty_paid),
        display_due=bill.outstanding,
        display_penalties=bill.unpaid_penalty,
        display_overdue=overdue,
    )


def build_unit_slice(
    unit_id: str,
    periods: Iterable[Period],
    bills: Mapping[str, WaterBill],
    readings: Mapping[str, MeterReading],
    credit_balance: Money,
    kept_cells: Iterable[PeriodCell] = (),
) -> UnitSlice:
    """Build a unit's cells for ``periods`` after the already computed ``kept_cells``.

    ``bills`` and ``readings`` are keyed by period id; ``readings`` may include
    the period before the first one so its consumption can be shown.
    """
    cells = list(kept_cells)
    overdue = sum_money(c.display_due for c in cells)
    for period in periods:
        bill = bills.get(period.period_id)
        reading = readings.get(period.period_id)
        if bill is None and reading is None:
            continue
        prior = readings.get(period.previous().period_id)
        cell = _make_cell(period, bill, reading, prior, overdue)
        cells.append(cell)
        overdue = overdue + cell.display_due
    return UnitSlice(unit_id=unit_id, cells=tuple(cells), credit_balance=credit_balance)


class AggregationBuilder:
    """Build aggregated views and unit slices from the store."""

    def __init__(self, session: AsyncSession, cache: AggregatedViewCache):
        self.session = session
        self.store = BillStore(session)
        self.cache = cache

    async def _periods(self, client_id: str, fiscal_year: int) -> list[Period]:
        config = await ConfigService(self.session).get_config(client_id)
        return fiscal_year_periods(fiscal_year, config.fiscal_year_start_month)

    async def get_view(self, client_id: str, fiscal_year: int) -> AggregatedView:
        """Return the cached view, building it on first access."""
        view = self.cache.get(client_id, fiscal_year)
        if view is None:
            view = await self.build(client_id, fiscal_year)
        return view

    async def build(self, client_id: str, fiscal_year: int) -> AggregatedView:
        """Full build with one batched read each for bills, credits and readings."""
        periods = await self._periods(client_id, fiscal_year)
        period_ids = [periods[0].previous().period_id] + [p.period_id for p in periods]

        bills = await self.store.list_bills_for_year(client_id, fiscal_year)
        credits = await self.store.list_credit_balances(client_id)
        readings = await self.store.list_readings_for_periods(client_id, period_ids)

        bills_by_unit: dict[str, dict[str, WaterBill]] = {}
        for bill in bills:
            bills_by_unit.setdefault(bill.unit_id, {})[bill.period_id] = bill
        readings_by_unit: dict[str, dict[str, MeterReading]] = {}
        for reading in readings:
            readings_by_unit.setdefault(reading.unit_id, {})[reading.period_id] = reading
        credit_by_unit = {c.unit_id: Money(c.balance) for c in credits}

        year_period_ids = set(period_ids[1:])
        unit_ids = set(bills_by_unit)
        unit_ids.update(
            unit_id
            for unit_id, by_period in readings_by_unit.items()
            if year_period_ids.intersection(by_period)
        )

        units = {
            unit_id: build_unit_slice(
                unit_id,
                periods,
                bills_by_unit.get(unit_id, {}),
                readings_by_unit.get(unit_id, {}),
                credit_by_unit.get(unit_id, Money(0)),
            )
            for unit_id in sorted(unit_ids)
        }
        view = AggregatedView(
            client_id=client_id,
            fiscal_year=fiscal_year,
            periods=tuple(periods),
            units=units,
            summary=summarize(units.values()),
        )
        self.cache.put(view)
        logger.info(
            "Built aggregated view for %s FY%d: %d units, %d bills",
            client_id,
            fiscal_year,
            len(units),
            len(bills),
        )
        return view

    async def rebuild_unit(
        self,
        client_id: str,
        fiscal_year: int,
        unit_id: str,
        period_id: str | None = None,
    ) -> UnitSlice:
        """Recompute one unit's slice from ``period_id`` forward without touching the cache.

        Cells before ``period_id`` are reused from the cached slice when there
        is one; otherwise the whole year of the unit is recomputed.
        """
        periods = await self._periods(client_id, fiscal_year)

        cached = self.cache.get(client_id, fiscal_year)
        cached_slice = cached.units.get(unit_id) if cached else None
        kept: tuple[PeriodCell, ...] = ()
        start = None
        if cached_slice is not None and period_id is not None:
            start = period_id
            kept = tuple(c for c in cached_slice.cells if c.period_id < start)
            periods = [p for p in periods if p.period_id >= start]

        if not periods:
            credit = await self.store.get_credit_balance(client_id, unit_id)
            return UnitSlice(unit_id, kept, _credit_of(credit))

        bills = await self.store.list_bills_for_unit(
            client_id, unit_id, fiscal_year=fiscal_year, from_period_id=start
        )
        reading_ids = [periods[0].previous().period_id] + [p.period_id for p in periods]
        readings = await self.store.list_readings_for_periods(client_id, reading_ids, unit_id)
        credit = await self.store.get_credit_balance(client_id, unit_id)

        return build_unit_slice(
            unit_id,
            periods,
            {b.period_id: b for b in bills},
            {r.period_id: r for r in readings},
            _credit_of(credit),
            kept,
        )


def _credit_of(credit: CreditBalance | None) -> Money:
    return Money(credit.balance) if credit is not None else Money(0)


__all__ = [
    "AggregatedView",
    "AggregatedViewCache",
    "AggregationBuilder",
    "PeriodCell",
    "UnitSlice",
    "YearSummary",
    "build_unit_slice",
    "summarize",
]
