"""Late-payment penalties for water bills.

Penalty rules:
- A bill is due on its due date; nothing accrues until the grace period
  (``grace_period_days``) after it has passed.
- The first accrual falls on the day after the grace period ends, and one
  more accrues on the same day of each following month.
- Each accrual is ``penalty_rate`` times the base charge still unpaid on
  that day. With ``compound_penalty`` the accrued, unpaid penalty is added
  to that basis.
- The total is rounded half-up to whole centavos once, at the end.

``compute_penalty`` is pure: the result depends only on the bill's stored
fields, its payments and the reference date, so recomputing for a single
unit never needs the rest of the year.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from utility_billing.errors import InconsistentStateError, ValidationError
from utility_billing.models.bill import BillStatus, WaterBill
from utility_billing.models.credit_balance import CreditReason
from utility_billing.services.bill_store import BillStore
from utility_billing.services.config_service import BillingConfig, ConfigService
from utility_billing.services.credit_service import CreditBalanceManager
from utility_billing.services.currency import Money, round_half_up
from utility_billing.services.periods import add_months

logger = logging.getLogger(__name__)


class PenaltyTerms(Protocol):
    penalty_rate: Decimal
    grace_period_days: int
    compound_penalty: bool


class _Payment(Protocol):
    payment_date: date
    base_portion: int
    penalty_portion: int


class _Bill(Protocol):
    due_date: date
    base_charge: int
    payments: Sequence[_Payment]


def grace_period_end(due_date: date, grace_period_days: int) -> date:
    return due_date + timedelta(days=grace_period_days)


def accrual_dates(due_date: date, grace_period_days: int, as_of: date) -> list[date]:
    """Dates on which a penalty accrues, up to and including ``as_of``."""
    first = grace_period_end(due_date, grace_period_days) + timedelta(days=1)
    dates = []
    months = 0
    accrual = first
    while accrual <= as_of:
        dates.append(accrual)
        months += 1
        accrual = add_months(first, months)
    return dates


def compute_penalty(bill: _Bill, as_of: date, config: PenaltyTerms) -> Money:
    """Penalty accrued on ``bill`` as of ``as_of``.

    Payments count toward an accrual only if made before the accrual date,
    so a backdated payment suppresses every later accrual it covers.
    """
    rate = Decimal(config.penalty_rate)
    accrued = Decimal(0)

    for accrual in accrual_dates(bill.due_date, config.grace_period_days, as_of):
        paid_before = [p for p in bill.payments if p.payment_date < accrual]
        unpaid_base = bill.base_charge - sum(p.base_portion for p in paid_before)
        if unpaid_base <= 0:
            # Payments only accumulate, so no later accrual can be positive either
            break

        basis = Decimal(unpaid_base)
        if config.compound_penalty:
            penalty_paid = sum(p.penalty_portion for p in paid_before)
            basis += max(Decimal(0), accrued - penalty_paid)
        accrued += basis * rate

    return Money(round_half_up(accrued))


@dataclass(frozen=True)
class BillAsOf:
    """A bill seen with the penalty it carried on another date.

    Used to plan a backdated payment; the stored bill is not touched.
    """

    bill: WaterBill
    penalty: Money

    @property
    def unit_id(self) -> str:
        return self.bill.unit_id

    @property
    def period_id(self) -> str:
        return self.bill.period_id

    @property
    def paid_amount(self) -> int:
        return self.bill.paid_amount

    @property
    def total_owed(self) -> Money:
        return Money(self.bill.base_charge + self.bill.previous_balance_carry) + self.penalty

    @property
    def outstanding(self) -> Money:
        return (self.total_owed - Money(self.bill.paid_amount)).clamp_zero()

    @property
    def unpaid_carry(self) -> Money:
        return self.bill.unpaid_carry

    @property
    def unpaid_base(self) -> Money:
        return self.bill.unpaid_base

    @property
    def unpaid_penalty(self) -> Money:
        return (self.penalty - Money(self.bill.penalty_paid)).clamp_zero()


def bills_as_of(bills: Sequence[WaterBill], as_of: date, config: PenaltyTerms) -> list[BillAsOf]:
    return [BillAsOf(bill, compute_penalty(bill, as_of, config)) for bill in bills]


@dataclass
class PenaltyRecalcSummary:
    """Outcome of a penalty recalculation run."""

    client_id: str
    as_of: date
    unit_ids: list[str] | None = None
    processed_bills: int = 0
    updated_bills: int = 0
    skipped_paid_bills: int = 0
    skipped_out_of_scope_bills: int = 0
    total_penalties: Money = field(default_factory=Money.zero)
    updated: list[tuple[str, str]] = field(default_factory=list)
    """(unit_id, period_id) of every bill whose penalty changed"""
    released_credit: Money = field(default_factory=Money.zero)
    """Penalty payments above a lowered penalty, returned to credit"""


@dataclass
class PenaltySummary:
    client_id: str
    total_penalties: Money
    unpaid_bills: int
    as_of: date


def recalculate_bills(
    bills: Sequence[WaterBill],
    as_of: date,
    config: BillingConfig,
    summary: PenaltyRecalcSummary,
    include_paid: bool = False,
) -> PenaltyRecalcSummary:
    """Recompute and store penalties on already-loaded bills.

    Paid bills keep their penalty unless ``include_paid`` is set, which a
    payment uses for the bills it has just touched.
    """
    for bill in bills:
        if summary.unit_ids is not None and bill.unit_id not in summary.unit_ids:
            summary.skipped_out_of_scope_bills += 1
            continue
        if bill.status == BillStatus.PAID and not include_paid:
            summary.skipped_paid_bills += 1
            continue

        summary.processed_bills += 1
        penalty = compute_penalty(bill, as_of, config)
        if bill.set_penalty(penalty, as_of):
            summary.updated_bills += 1
            summary.updated.append((bill.unit_id, bill.period_id))
            logger.debug(
                "Penalty for %s unit %s %s: %s",
                bill.client_id,
                bill.unit_id,
                bill.period_id,
                penalty,
            )
        summary.total_penalties = summary.total_penalties + penalty
    return summary


async def release_overpaid_penalties(
    store: BillStore,
    bills: Sequence[WaterBill],
    exclude_ref: str | None = None,
) -> Money:
    """Move penalty payments above a lowered penalty back to the unit's credit.

    The latest-dated allocations give back first. Each refund is tagged with
    the reference of the payment it came out of, so reversing that payment
    takes the refund back with it.

    Returns:
        Total returned to credit
    """
    credits = CreditBalanceManager(store)
    released = Money(0)
    for bill in bills:
        excess = bill.penalty_paid - bill.penalty_amount
        if excess <= 0:
            continue

        rows = sorted(
            (
                p
                for p in bill.payments
                if p.penalty_portion > 0 and p.transaction_ref != exclude_ref
            ),
            key=lambda p: (p.payment_date, p.id or 0),
            reverse=True,
        )
        for row in rows:
            if excess <= 0:
                break
            amount = min(excess, row.penalty_portion)
            transaction_ref = row.transaction_ref
            payment = await store.get_payment(bill.client_id, transaction_ref)
            if payment is None:
                raise InconsistentStateError(
                    f"Bill {bill.client_id}/{bill.unit_id}/{bill.period_id} has an allocation "
                    f"of unknown payment {transaction_ref}"
                )
            bill.release_penalty(row, amount)
            payment.credit_created += amount
            await credits.adjust(
                bill.client_id,
                bill.unit_id,
                Money(amount),
                CreditReason.APPLIED,
                transaction_ref,
                note=f"Penalty on {bill.period_id} lowered, overpayment returned",
            )
            excess -= amount
            released = released + Money(amount)

        if excess > 0:
            raise InconsistentStateError(
                f"Bill {bill.client_id}/{bill.unit_id}/{bill.period_id}: "
                f"{excess} of paid penalty could not be returned"
            )
        logger.info(
            "Penalty on %s unit %s %s lowered below the amount paid, returned to credit",
            bill.client_id,
            bill.unit_id,
            bill.period_id,
        )
    return released


class PenaltyRecalculationService:
    """Recalculate and persist stored penalties for a client or some of its units."""

    def __init__(self, session: AsyncSession, clock: Callable[[], date] = date.today):
        self.session = session
        self.store = BillStore(session)
        self.clock = clock

    async def recalculate_for_client(
        self,
        client_id: str,
        as_of: date | None = None,
        unit_ids: list[str] | None = None,
    ) -> PenaltyRecalcSummary:
        """Recalculate penalties on every unpaid bill of the client (caller commits).

        Args:
            client_id: Client to process
            as_of: Reference date (default: today)
            unit_ids: Restrict to these units (surgical mode)
        """
        as_of = as_of or self.clock()
        config = await ConfigService(self.session).get_config(client_id)
        bills = await self.store.list_client_bills(client_id, unit_ids)

        summary = PenaltyRecalcSummary(client_id=client_id, as_of=as_of, unit_ids=unit_ids)
        recalculate_bills(bills, as_of, config, summary)
        summary.released_credit = await release_overpaid_penalties(self.store, bills)
        await self.store.flush()

        logger.info(
            "Penalty recalculation for %s (%s): processed=%d updated=%d skipped_paid=%d total=%s released=%s",
            client_id,
            f"units {unit_ids}" if unit_ids is not None else "all units",
            summary.processed_bills,
            summary.updated_bills,
            summary.skipped_paid_bills,
            summary.total_penalties,
            summary.released_credit,
        )
        return summary

    async def recalculate_for_units(
        self, client_id: str, unit_ids: list[str], as_of: date | None = None
    ) -> PenaltyRecalcSummary:
        if not unit_ids:
            raise ValidationError("unit_ids must be a non-empty list")
        return await self.recalculate_for_client(client_id, as_of, unit_ids)

    async def get_penalty_summary(self, client_id: str) -> PenaltySummary:
        """Sum unpaid penalties across the client's bills as currently stored."""
        bills = await self.store.list_client_bills(client_id)
        total = Money(0)
        unpaid = 0
        for bill in bills:
            if bill.status != BillStatus.PAID:
                total = total + bill.unpaid_penalty
                unpaid += 1
        return PenaltySummary(
            client_id=client_id,
            total_penalties=total,
            unpaid_bills=unpaid,
            as_of=self.clock(),
        )


__all__ = [
    "compute_penalty",
    "accrual_dates",
    "grace_period_end",
    "recalculate_bills",
    "release_overpaid_penalties",
    "bills_as_of",
    "BillAsOf",
    "PenaltyRecalcSummary",
    "PenaltySummary",
    "PenaltyRecalculationService",
]
