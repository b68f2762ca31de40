"""Distribution of a payment plus available credit across a unit's unpaid bills.

Ordering rules (fixed, not configurable):
- Bills are settled oldest period first.
- Each bill is fully settled before the next one receives anything.
- Within a bill: carried balance, then base charge, then penalty.
- Cash is spent before credit, so credit is only consumed when the cash
  alone does not cover what gets allocated.

``distribute`` is pure; it plans the allocations and the caller applies them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Sequence

from utility_billing.errors import ValidationError
from utility_billing.models.bill import BillStatus, derive_status
from utility_billing.services.currency import Money, sum_money


class PaymentOutcome(str, Enum):
    UNDERPAYMENT = "underpayment"
    EXACT = "exact"
    OVERPAYMENT = "overpayment"


class PayableBill(Protocol):
    unit_id: str
    period_id: str
    paid_amount: int

    @property
    def total_owed(self) -> Money: ...

    @property
    def outstanding(self) -> Money: ...

    @property
    def unpaid_carry(self) -> Money: ...

    @property
    def unpaid_base(self) -> Money: ...

    @property
    def unpaid_penalty(self) -> Money: ...


@dataclass(frozen=True)
class Allocation:
    """Money applied to one bill, split by source and by component."""

    period_id: str
    amount: Money
    cash: Money
    credit: Money
    carry: Money
    base: Money
    penalty: Money
    status_after: BillStatus
    remaining_after: Money


@dataclass(frozen=True)
class Distribution:
    unit_id: str
    payment: Money
    available_credit: Money
    allocations: tuple[Allocation, ...]
    credit_consumed: Money
    credit_created: Money
    remaining_credit: Money
    outcome: PaymentOutcome
    remaining_due: Money
    """Outstanding across all given bills after the allocations"""

    @property
    def total_allocated(self) -> Money:
        return sum_money(a.amount for a in self.allocations)

    def is_balanced(self) -> bool:
        """payment + credit consumed == allocated + credit created."""
        return (
            self.payment + self.credit_consumed
            == self.total_allocated + self.credit_created
        )


def _split_components(bill: PayableBill, amount: Money) -> tuple[Money, Money, Money]:
    remaining = amount
    parts = []
    for unpaid in (bill.unpaid_carry, bill.unpaid_base, bill.unpaid_penalty):
        part = min(unpaid, remaining)
        parts.append(part)
        remaining = remaining - part
    # ``amount`` never exceeds ``outstanding``, which is at most the unpaid components
    carry, base, penalty = parts
    return carry, base, penalty


def distribute(
    payment: Money,
    unit_id: str,
    available_credit: Money,
    unpaid_bills: Sequence[PayableBill],
) -> Distribution:
    """Plan how ``payment`` and ``available_credit`` settle ``unpaid_bills``.

    Raises:
        ValidationError: If an amount is negative or a bill belongs to another unit
    """
    if payment.is_negative():
        raise ValidationError(f"Payment amount must not be negative: {payment}")
    if available_credit.is_negative():
        raise ValidationError(f"Available credit must not be negative: {available_credit}")
    for bill in unpaid_bills:
        if bill.unit_id != unit_id:
            raise ValidationError(f"Bill {bill.period_id} belongs to unit {bill.unit_id}, not {unit_id}")

    ordered = sorted(unpaid_bills, key=lambda b: b.period_id)
    cash_left = payment
    credit_left = available_credit
    allocations: list[Allocation] = []
    remaining_due = Money(0)

    for bill in ordered:
        owed = bill.outstanding
        pool = cash_left + credit_left
        amount = min(owed, pool)
        remaining_due = remaining_due + (owed - amount)
        if not amount.is_positive():
            continue

        cash = min(amount, cash_left)
        credit = amount - cash
        cash_left = cash_left - cash
        credit_left = credit_left - credit
        carry, base, penalty = _split_components(bill, amount)
        allocations.append(
            Allocation(
                period_id=bill.period_id,
                amount=amount,
                cash=cash,
                credit=credit,
                carry=carry,
                base=base,
                penalty=penalty,
                status_after=derive_status(
                    bill.paid_amount + amount.centavos, bill.total_owed.centavos
                ),
                remaining_after=owed - amount,
            )
        )

    credit_consumed = available_credit - credit_left
    credit_created = cash_left
    remaining_credit = credit_left + credit_created

    if remaining_due.is_positive():
        outcome = PaymentOutcome.UNDERPAYMENT
    elif credit_created.is_positive():
        outcome = PaymentOutcome.OVERPAYMENT
    else:
        outcome = PaymentOutcome.EXACT

    return Distribution(
        unit_id=unit_id,
        payment=payment,
        available_credit=available_credit,
        allocations=tuple(allocations),
        credit_consumed=credit_consumed,
        credit_created=credit_created,
        remaining_credit=remaining_credit,
        outcome=outcome,
        remaining_due=remaining_due,
    )


__all__ = ["distribute", "Distribution", "Allocation", "PaymentOutcome", "PayableBill"]
