"""Water payment recording, preview and reversal.

A payment is one unit of work: its bill allocations, the credit adjustment
and the payment record commit together or not at all. ``transaction_ref``
identifies the payment; recording the same reference again returns the
stored outcome instead of paying twice.

After commit the surgical update service refreshes the unit's cached view
cells. That step may fail without affecting the recorded payment.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utility_billing.config import Settings
from utility_billing.errors import InconsistentStateError, NotFoundError, ValidationError
from utility_billing.models.bill import BillPayment, BillStatus, WaterBill
from utility_billing.models.credit_balance import CreditReason
from utility_billing.models.water_payment import PaymentStatus, WaterPayment
from utility_billing.services.aggregation_service import AggregatedViewCache
from utility_billing.services.bill_store import BillStore
from utility_billing.services.bills_service import BillSnapshot
from utility_billing.services.concurrency import UnitLockRegistry, run_in_transaction
from utility_billing.services.config_service import ConfigService
from utility_billing.services.credit_service import CreditBalanceManager, CreditHistoryItem, verify_credit
from utility_billing.services.currency import Money
from utility_billing.services.payment_distributor import (
    Allocation,
    Distribution,
    PaymentOutcome,
    distribute,
)
from utility_billing.services.penalty_service import (
    PenaltyRecalcSummary,
    bills_as_of,
    recalculate_bills,
    release_overpaid_penalties,
)
from utility_billing.services.periods import Period
from utility_billing.services.surgical_update_service import SurgicalUpdateService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a recorded payment."""

    client_id: str
    unit_id: str
    transaction_ref: str
    payment_date: date
    amount: Money
    outcome: PaymentOutcome
    allocations: tuple[Allocation, ...]
    new_bill_statuses: dict[str, BillStatus]
    credit_consumed: Money
    credit_created: Money
    new_credit_balance: Money
    notes: str | None
    affected_periods: tuple[tuple[int, str], ...] = ()
    """(fiscal_year, earliest period_id) per fiscal year touched"""
    duplicate: bool = False
    """True when the reference was already recorded and nothing was written"""


@dataclass(frozen=True)
class ReversalResult:
    client_id: str
    unit_id: str
    transaction_ref: str
    restored_bills: dict[str, BillStatus]
    credit_change: Money
    new_credit_balance: Money
    affected_periods: tuple[tuple[int, str], ...] = ()


@dataclass(frozen=True)
class UnpaidBillsSummary:
    unit_id: str
    bills: list[BillSnapshot]
    total_due: Money
    credit_balance: Money
    credit_history: list[CreditHistoryItem]


@dataclass(frozen=True)
class ConsistencyReport:
    unit_id: str
    bills_checked: int
    credit_balance: Money
    credit_entries: int


def build_transaction_notes(
    unit_id: str,
    allocations: Sequence[Allocation],
    credit_consumed: Money,
    credit_created: Money,
    start_month: int = 7,
    extra: str | None = None,
) -> str:
    """Readable description of what a payment paid, e.g. for the ledger.

    ``Water payment unit 101: Jul 2025 base $100.00 + penalty $5.00. Credit added $20.00.``
    """
    parts = []
    for allocation in allocations:
        pieces = []
        if allocation.carry:
            pieces.append(f"carry {allocation.carry}")
        if allocation.base:
            pieces.append(f"base {allocation.base}")
        if allocation.penalty:
            pieces.append(f"penalty {allocation.penalty}")
        label = Period.from_id(allocation.period_id, start_month).label
        parts.append(f"{label} {' + '.join(pieces)}")

    notes = f"Water payment unit {unit_id}: " + ("; ".join(parts) if parts else "no bills paid") + "."
    if credit_consumed:
        notes += f" Credit used {credit_consumed}."
    if credit_created:
        notes += f" Credit added {credit_created}."
    if extra:
        notes += f" {extra}"
    return notes


def _affected_periods(bills: Sequence[WaterBill]) -> tuple[tuple[int, str], ...]:
    earliest: dict[int, str] = {}
    for bill in bills:
        current = earliest.get(bill.fiscal_year)
        if current is None or bill.period_id < current:
            earliest[bill.fiscal_year] = bill.period_id
    return tuple(sorted(earliest.items()))


def _check_bills(bills: Sequence[WaterBill]) -> None:
    for bill in bills:
        try:
            bill.check_invariants()
        except InconsistentStateError as e:
            logger.error("Inconsistent bill state: %s", e)
            raise


class WaterPaymentService:
    """Record, preview and reverse water payments for a client's units."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: AggregatedViewCache,
        locks: UnitLockRegistry,
        clock: Callable[[], date] = date.today,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.locks = locks
        self.clock = clock
        self.settings = settings
        self.surgical = SurgicalUpdateService(session_factory, cache, clock)

    def _validate_request(self, amount: Money, payment_date: date, transaction_ref: str) -> None:
        if not amount.is_positive():
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        if payment_date > self.clock():
            raise ValidationError(f"Payment date {payment_date} is in the future")
        if not transaction_ref or not transaction_ref.strip():
            raise ValidationError("transaction_ref is required")

    async def record_payment(
        self,
        client_id: str,
        unit_id: str,
        amount: Money,
        payment_date: date,
        transaction_ref: str,
        payment_method: str = "cash",
        notes: str | None = None,
    ) -> PaymentResult:
        """Distribute a payment over the unit's unpaid bills and persist it.

        Raises:
            ValidationError: Invalid request, or the reference belongs to a
                different or reversed payment
            NotFoundError: If the client has no billing configuration
            ConcurrentModificationError: If retries were exhausted
            InconsistentStateError: If stored bills or credit disagree with
                their history
            StoreUnavailableError: If the store stayed unavailable
        """
        self._validate_request(amount, payment_date, transaction_ref)
        transaction_ref = transaction_ref.strip()

        async def work(session: AsyncSession) -> PaymentResult:
            return await self._record(
                session, client_id, unit_id, amount, payment_date, transaction_ref, payment_method, notes
            )

        async with self.locks.lock_for(client_id, unit_id):
            result = await run_in_transaction(
                self.session_factory, work, f"record payment {transaction_ref}", self.settings
            )
            if result.duplicate:
                logger.info("Payment %s already recorded for unit %s", transaction_ref, unit_id)
                return result

            logger.info(
                "Recorded payment %s for %s unit %s: %s (%s), credit now %s",
                transaction_ref,
                client_id,
                unit_id,
                amount,
                result.outcome.value,
                result.new_credit_balance,
            )
            await self._after_commit(client_id, unit_id, result.affected_periods, result.new_credit_balance)
        return result

    async def _record(
        self,
        session: AsyncSession,
        client_id: str,
        unit_id: str,
        amount: Money,
        payment_date: date,
        transaction_ref: str,
        payment_method: str,
        extra_notes: str | None,
    ) -> PaymentResult:
        store = BillStore(session)

        existing = await store.get_payment(client_id, transaction_ref)
        if existing is not None:
            if existing.unit_id != unit_id or existing.amount != amount.centavos:
                raise ValidationError(
                    f"transaction_ref {transaction_ref} is already used by another payment"
                )
            if existing.status == PaymentStatus.REVERSED:
                raise ValidationError(f"Payment {transaction_ref} was reversed; use a new transaction_ref")
            return await self._stored_result(store, existing)

        config = await ConfigService(session).get_config(client_id)
        credits = CreditBalanceManager(store)

        bills = await store.list_unpaid_bills(client_id, unit_id)
        _check_bills(bills)
        available_credit = await credits.get_balance(client_id, unit_id)

        # Planned against penalties as they stood on the payment date; a
        # backdated payment must not pay accruals it would have prevented
        planned = bills_as_of(bills, payment_date, config)
        distribution = distribute(amount, unit_id, available_credit, planned)
        by_period = {b.period_id: b for b in bills}
        paid_bills = []
        for allocation in distribution.allocations:
            bill = by_period[allocation.period_id]
            bill.apply_payment(
                BillPayment(
                    transaction_ref=transaction_ref,
                    payment_date=payment_date,
                    amount=allocation.amount.centavos,
                    cash_amount=allocation.cash.centavos,
                    credit_amount=allocation.credit.centavos,
                    carry_portion=allocation.carry.centavos,
                    base_portion=allocation.base.centavos,
                    penalty_portion=allocation.penalty.centavos,
                )
            )
            paid_bills.append(bill)

        if distribution.credit_consumed:
            await credits.adjust(
                client_id, unit_id, -distribution.credit_consumed, CreditReason.USED, transaction_ref
            )
        if distribution.credit_created:
            await credits.adjust(
                client_id, unit_id, distribution.credit_created, CreditReason.APPLIED, transaction_ref
            )
        # Every loaded bill, paid or not, is brought to today with this payment
        # in its history
        today = self.clock()
        recalc = recalculate_bills(
            bills,
            today,
            config,
            PenaltyRecalcSummary(client_id=client_id, as_of=today),
            include_paid=True,
        )
        await release_overpaid_penalties(store, bills, exclude_ref=transaction_ref)
        new_balance = await credits.get_balance(client_id, unit_id)
        repriced = {period_id for _, period_id in recalc.updated}
        touched = [b for b in bills if b in paid_bills or b.period_id in repriced]
        # Report where each bill actually stands, not where the plan left it
        allocations = tuple(
            replace(
                a,
                status_after=BillStatus(by_period[a.period_id].status),
                remaining_after=by_period[a.period_id].outstanding,
            )
            for a in distribution.allocations
        )

        notes = build_transaction_notes(
            unit_id,
            distribution.allocations,
            distribution.credit_consumed,
            distribution.credit_created,
            config.fiscal_year_start_month,
            extra_notes,
        )
        store.add_payment(
            WaterPayment(
                client_id=client_id,
                unit_id=unit_id,
                transaction_ref=transaction_ref,
                payment_date=payment_date,
                amount=amount.centavos,
                credit_consumed=distribution.credit_consumed.centavos,
                credit_created=distribution.credit_created.centavos,
                credit_balance_after=new_balance.centavos,
                outcome=distribution.outcome.value,
                payment_method=payment_method,
                notes=notes,
                status=PaymentStatus.RECORDED.value,
            )
        )
        await store.flush()

        return PaymentResult(
            client_id=client_id,
            unit_id=unit_id,
            transaction_ref=transaction_ref,
            payment_date=payment_date,
            amount=amount,
            outcome=distribution.outcome,
            allocations=allocations,
            new_bill_statuses={b.period_id: BillStatus(b.status) for b in paid_bills},
            credit_consumed=distribution.credit_consumed,
            credit_created=distribution.credit_created,
            new_credit_balance=new_balance,
            notes=notes,
            affected_periods=_affected_periods(touched),
        )

    async def _stored_result(self, store: BillStore, payment: WaterPayment) -> PaymentResult:
        """Rebuild the result of an already recorded payment from its rows."""
        bills = await store.list_bills_with_payment(payment.client_id, payment.transaction_ref)
        allocations = []
        for bill in bills:
            for row in bill.payments:
                if row.transaction_ref != payment.transaction_ref:
                    continue
                allocations.append(
                    Allocation(
                        period_id=bill.period_id,
                        amount=Money(row.amount),
                        cash=Money(row.cash_amount),
                        credit=Money(row.credit_amount),
                        carry=Money(row.carry_portion),
                        base=Money(row.base_portion),
                        penalty=Money(row.penalty_portion),
                        status_after=BillStatus(bill.status),
                        remaining_after=bill.outstanding,
                    )
                )
        return PaymentResult(
            client_id=payment.client_id,
            unit_id=payment.unit_id,
            transaction_ref=payment.transaction_ref,
            payment_date=payment.payment_date,
            amount=Money(payment.amount),
            outcome=PaymentOutcome(payment.outcome),
            allocations=tuple(allocations),
            new_bill_statuses={b.period_id: BillStatus(b.status) for b in bills},
            credit_consumed=Money(payment.credit_consumed),
            credit_created=Money(payment.credit_created),
            new_credit_balance=Money(payment.credit_balance_after),
            notes=payment.notes,
            duplicate=True,
        )

    async def _after_commit(
        self,
        client_id: str,
        unit_id: str,
        affected_periods: Sequence[tuple[int, str]],
        credit_balance: Money,
    ) -> None:
        for fiscal_year, period_id in affected_periods:
            await self.surgical.on_mutation(client_id, fiscal_year, unit_id, period_id)
        self.surgical.refresh_credit(client_id, unit_id, credit_balance)

    async def preview_payment(
        self,
        client_id: str,
        unit_id: str,
        amount: Money,
        payment_date: date | None = None,
    ) -> Distribution:
        """Compute the distribution a payment would produce, without writing."""
        payment_date = payment_date or self.clock()
        if not amount.is_positive():
            raise ValidationError(f"Payment amount must be positive, got {amount}")

        async with self.session_factory() as session:
            store = BillStore(session)
            try:
                config = await ConfigService(session).get_config(client_id)
                bills = await store.list_unpaid_bills(client_id, unit_id)
                available_credit = await CreditBalanceManager(store).get_balance(client_id, unit_id)
                planned = bills_as_of(bills, payment_date, config)
                return distribute(amount, unit_id, available_credit, planned)
            finally:
                await store.rollback()

    async def reverse_payment(self, client_id: str, transaction_ref: str) -> ReversalResult:
        """Undo every allocation and credit entry tagged with ``transaction_ref``.

        Raises:
            NotFoundError: If no payment has this reference
            ValidationError: If the payment is already reversed
            InsufficientCreditError: If credit created by this payment has
                since been spent; reverse the later payment first
        """
        async with self.session_factory() as session:
            payment = await BillStore(session).get_payment(client_id, transaction_ref)
            if payment is None:
                raise NotFoundError(f"Payment {transaction_ref} not found for client {client_id}")
            unit_id = payment.unit_id

        async def work(session: AsyncSession) -> ReversalResult:
            return await self._reverse(session, client_id, unit_id, transaction_ref)

        async with self.locks.lock_for(client_id, unit_id):
            result = await run_in_transaction(
                self.session_factory, work, f"reverse payment {transaction_ref}", self.settings
            )
            logger.info(
                "Reversed payment %s for %s unit %s: %d bills restored, credit %s",
                transaction_ref,
                client_id,
                unit_id,
                len(result.restored_bills),
                result.new_credit_balance,
            )
            await self._after_commit(client_id, unit_id, result.affected_periods, result.new_credit_balance)
        return result

    async def _reverse(
        self, session: AsyncSession, client_id: str, unit_id: str, transaction_ref: str
    ) -> ReversalResult:
        store = BillStore(session)
        payment = await store.get_payment(client_id, transaction_ref)
        if payment is None:
            raise NotFoundError(f"Payment {transaction_ref} not found for client {client_id}")
        if payment.status == PaymentStatus.REVERSED:
            raise ValidationError(f"Payment {transaction_ref} is already reversed")

        config = await ConfigService(session).get_config(client_id)
        credits = CreditBalanceManager(store)

        bills = await store.list_bills_with_payment(client_id, transaction_ref)
        _check_bills(bills)
        for bill in bills:
            removed = bill.remove_payments(transaction_ref)
            logger.debug(
                "Removed %d allocations of %s from %s unit %s",
                len(removed),
                transaction_ref,
                bill.period_id,
                bill.unit_id,
            )

        balance_before = await credits.get_balance(client_id, unit_id)
        new_balance = await credits.reverse_transaction(client_id, unit_id, transaction_ref)

        payment.status = PaymentStatus.REVERSED.value
        payment.reversed_at = datetime.now(timezone.utc)

        today = self.clock()
        recalculate_bills(
            bills,
            today,
            config,
            PenaltyRecalcSummary(client_id=client_id, as_of=today),
            include_paid=True,
        )
        await release_overpaid_penalties(store, bills, exclude_ref=transaction_ref)
        new_balance = await credits.get_balance(client_id, unit_id)
        await store.flush()

        return ReversalResult(
            client_id=client_id,
            unit_id=unit_id,
            transaction_ref=transaction_ref,
            restored_bills={b.period_id: BillStatus(b.status) for b in bills},
            credit_change=new_balance - balance_before,
            new_credit_balance=new_balance,
            affected_periods=_affected_periods(bills),
        )

    async def adjust_credit(
        self,
        client_id: str,
        unit_id: str,
        amount: Money,
        transaction_ref: str,
        note: str | None = None,
    ) -> Money:
        """Manually add (positive) or remove (negative) credit."""

        async def work(session: AsyncSession) -> Money:
            return await CreditBalanceManager(BillStore(session)).manual_adjustment(
                client_id, unit_id, amount, transaction_ref, note
            )

        async with self.locks.lock_for(client_id, unit_id):
            balance = await run_in_transaction(
                self.session_factory, work, f"adjust credit {transaction_ref}", self.settings
            )
            self.surgical.refresh_credit(client_id, unit_id, balance)
        logger.info(
            "Adjusted credit for %s unit %s by %s (%s), balance %s",
            client_id,
            unit_id,
            amount,
            transaction_ref,
            balance,
        )
        return balance

    async def get_credit(
        self, client_id: str, unit_id: str, limit: int = 50
    ) -> tuple[Money, list[CreditHistoryItem]]:
        async with self.session_factory() as session:
            credits = CreditBalanceManager(BillStore(session))
            balance = await credits.get_balance(client_id, unit_id)
            return balance, await credits.get_history(client_id, unit_id, limit)

    async def get_unpaid_bills_summary(self, client_id: str, unit_id: str) -> UnpaidBillsSummary:
        async with self.session_factory() as session:
            store = BillStore(session)
            config = await ConfigService(session).get_config(client_id)
            bills = await store.list_unpaid_bills(client_id, unit_id)
            credits = CreditBalanceManager(store)
            snapshots = [BillSnapshot.from_bill(b, config.fiscal_year_start_month) for b in bills]
            total_due = Money(0)
            for snapshot in snapshots:
                total_due = total_due + snapshot.outstanding
            return UnpaidBillsSummary(
                unit_id=unit_id,
                bills=snapshots,
                total_due=total_due,
                credit_balance=await credits.get_balance(client_id, unit_id),
                credit_history=await credits.get_history(client_id, unit_id, limit=10),
            )

    async def get_payment_history(
        self, client_id: str, unit_id: str, fiscal_year: int | None = None
    ) -> list[WaterPayment]:
        async with self.session_factory() as session:
            return await BillStore(session).list_payments(client_id, unit_id, fiscal_year)

    async def check_unit_consistency(self, client_id: str, unit_id: str) -> ConsistencyReport:
        """Verify stored bill totals and the credit ledger of a unit.

        Raises:
            InconsistentStateError: On the first violation found
        """
        async with self.session_factory() as session:
            store = BillStore(session)
            bills = await store.list_bills_for_unit(client_id, unit_id)
            _check_bills(bills)
            credit = await store.get_credit_balance(client_id, unit_id)
            if credit is not None:
                try:
                    verify_credit(credit)
                except InconsistentStateError as e:
                    logger.error("Inconsistent credit state: %s", e)
                    raise
            return ConsistencyReport(
                unit_id=unit_id,
                bills_checked=len(bills),
                credit_balance=Money(credit.balance) if credit else Money(0),
                credit_entries=len(credit.history) if credit else 0,
            )


__all__ = [
    "WaterPaymentService",
    "PaymentResult",
    "ReversalResult",
    "UnpaidBillsSummary",
    "ConsistencyReport",
    "build_transaction_notes",
]
