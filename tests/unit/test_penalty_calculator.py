"""Unit tests for penalty accrual."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from utility_billing.errors import InconsistentStateError
from utility_billing.models.bill import BillPayment, BillStatus
from utility_billing.services.config_service import BillingConfig
from utility_billing.services.currency import Money
from utility_billing.services.penalty_service import (
    PenaltyRecalcSummary,
    accrual_dates,
    bills_as_of,
    compute_penalty,
    recalculate_bills,
)
from tests.factories import make_bill

DUE = date(2025, 7, 1)


def bill(base=10000, payments=()):
    return SimpleNamespace(due_date=DUE, base_charge=base, payments=list(payments))


def payment(day, base_portion, penalty_portion=0):
    return SimpleNamespace(payment_date=day, base_portion=base_portion, penalty_portion=penalty_portion)


@pytest.fixture
def simple():
    return BillingConfig(client_id="hoa-1", rate_per_m3=Money(5000), penalty_rate=Decimal("0.05"))


@pytest.fixture
def compound():
    return BillingConfig(
        client_id="hoa-1", rate_per_m3=Money(5000), penalty_rate=Decimal("0.05"), compound_penalty=True
    )


class TestAccrualDates:
    def test_first_accrual_is_day_after_grace(self):
        assert accrual_dates(DUE, 10, date(2025, 7, 11)) == []
        assert accrual_dates(DUE, 10, date(2025, 7, 12)) == [date(2025, 7, 12)]

    def test_monthly_after_first(self):
        assert accrual_dates(DUE, 10, date(2025, 9, 12)) == [
            date(2025, 7, 12),
            date(2025, 8, 12),
            date(2025, 9, 12),
        ]


class TestComputePenalty:
    """Penalty for a bill due July 1st with a 10 day grace period."""

    def test_nothing_within_grace_period(self, simple):
        assert compute_penalty(bill(), date(2025, 7, 11), simple) == Money(0)

    def test_first_accrual_after_grace_period(self, simple):
        assert compute_penalty(bill(), date(2025, 7, 12), simple) == Money(500)

    def test_simple_accrues_monthly_on_base(self, simple):
        assert compute_penalty(bill(), date(2025, 8, 11), simple) == Money(500)
        assert compute_penalty(bill(), date(2025, 8, 12), simple) == Money(1000)
        assert compute_penalty(bill(), date(2025, 10, 12), simple) == Money(2000)

    def test_compound_adds_unpaid_penalty_to_basis(self, compound):
        # 500, then 5% of 10500
        assert compute_penalty(bill(), date(2025, 8, 12), compound) == Money(1025)

    def test_rounds_half_up_once(self, simple):
        # 5% of 10010 = 500.5 centavos
        assert compute_penalty(bill(base=10010), date(2025, 7, 12), simple) == Money(501)

    def test_paid_before_due_date_never_accrues(self, simple):
        paid = bill(payments=[payment(date(2025, 6, 28), 10000)])
        assert compute_penalty(paid, date(2026, 1, 1), simple) == Money(0)

    def test_backdated_payment_suppresses_later_accruals(self, simple):
        paid = bill(payments=[payment(date(2025, 7, 20), 10000)])
        # Only the July 12 accrual happened before the payment
        assert compute_penalty(paid, date(2025, 12, 31), simple) == Money(500)

    def test_partial_payment_reduces_basis(self, simple):
        partly = bill(payments=[payment(date(2025, 7, 1), 5000)])
        assert compute_penalty(partly, date(2025, 8, 12), simple) == Money(500)

    def test_payment_on_accrual_day_does_not_count(self, simple):
        same_day = bill(payments=[payment(date(2025, 7, 12), 10000)])
        assert compute_penalty(same_day, date(2025, 9, 1), simple) == Money(500)

    def test_idempotent(self, simple):
        b = bill(payments=[payment(date(2025, 8, 1), 3000)])
        as_of = date(2025, 11, 30)
        assert compute_penalty(b, as_of, simple) == compute_penalty(b, as_of, simple)


class TestRecalculateBills:
    def test_skips_paid_and_out_of_scope(self, simple):
        unpaid = make_bill("101", "2026-00", 10000)
        other = make_bill("102", "2026-00", 10000)
        paid = make_bill("101", "2025-11", 10000)
        paid.apply_payment(
            BillPayment(
                transaction_ref="t-1",
                payment_date=date(2025, 6, 1),
                amount=10000,
                cash_amount=10000,
                credit_amount=0,
                carry_portion=0,
                base_portion=10000,
                penalty_portion=0,
            )
        )
        assert paid.status == BillStatus.PAID

        summary = PenaltyRecalcSummary(client_id="hoa-1", as_of=date(2025, 7, 12), unit_ids=["101"])
        recalculate_bills([unpaid, other, paid], date(2025, 7, 12), simple, summary)

        assert summary.processed_bills == 1
        assert summary.updated_bills == 1
        assert summary.skipped_paid_bills == 1
        assert summary.skipped_out_of_scope_bills == 1
        assert summary.updated == [("101", "2026-00")]
        assert unpaid.penalty_amount == 500
        assert other.penalty_amount == 0
        assert summary.total_penalties == Money(500)

    def test_second_run_changes_nothing(self, simple):
        b = make_bill("101", "2026-00", 10000)
        as_of = date(2025, 8, 20)
        recalculate_bills([b], as_of, simple, PenaltyRecalcSummary("hoa-1", as_of))
        again = recalculate_bills([b], as_of, simple, PenaltyRecalcSummary("hoa-1", as_of))

        assert again.updated_bills == 0
        assert b.penalty_amount == 1000

    def test_include_paid_reprices_settled_bill(self, simple):
        # Settled against a penalty that was never brought up to date
        b = make_bill("101", "2026-00", 10000)
        b.apply_payment(paid_row("t-1", date(2025, 8, 20), base=10000))
        assert b.status == BillStatus.PAID
        as_of = date(2025, 8, 20)

        summary = recalculate_bills(
            [b], as_of, simple, PenaltyRecalcSummary("hoa-1", as_of), include_paid=True
        )

        assert summary.updated == [("101", "2026-00")]
        assert b.penalty_amount == 1000
        assert b.status == BillStatus.PARTIAL


def paid_row(ref, day, base=0, penalty=0, credit=0):
    amount = base + penalty
    return BillPayment(
        transaction_ref=ref,
        payment_date=day,
        amount=amount,
        cash_amount=amount - credit,
        credit_amount=credit,
        carry_portion=0,
        base_portion=base,
        penalty_portion=penalty,
    )


class TestBillsAsOf:
    def test_planning_view_leaves_bill_untouched(self, simple):
        b = make_bill("101", "2026-00", 10000, penalty=1500)

        (planned,) = bills_as_of([b], date(2025, 7, 5), simple)

        assert planned.penalty == Money(0)
        assert planned.outstanding == Money(10000)
        assert planned.unpaid_penalty == Money(0)
        assert b.penalty_amount == 1500
        assert b.outstanding == Money(11500)

    def test_paid_penalty_above_earlier_penalty_owes_nothing(self, simple):
        b = make_bill("101", "2026-00", 10000, penalty=1500)
        b.apply_payment(paid_row("t-1", date(2025, 9, 15), base=10000, penalty=200))

        (planned,) = bills_as_of([b], date(2025, 7, 5), simple)

        assert planned.outstanding == Money(0)
        assert planned.unpaid_base == Money(0)


class TestBillInvariants:
    def test_penalty_below_amount_paid_is_inconsistent(self):
        b = make_bill("101", "2026-00", 10000, penalty=500)
        b.apply_payment(paid_row("t-1", DUE, base=10000, penalty=500))

        b.set_penalty(Money(200), DUE)

        with pytest.raises(InconsistentStateError, match="penalty paid 500 > penalty owed 200"):
            b.check_invariants()

    def test_released_penalty_restores_consistency(self):
        b = make_bill("101", "2026-00", 10000, penalty=500)
        row = paid_row("t-1", DUE, base=10000, penalty=500, credit=1000)
        b.apply_payment(row)
        b.set_penalty(Money(200), DUE)

        b.release_penalty(row, 300)

        b.check_invariants()
        assert b.status == BillStatus.PAID
        assert (b.paid_amount, b.penalty_paid) == (10200, 200)
        assert (row.amount, row.cash_amount, row.credit_amount) == (10200, 9200, 1000)

    def test_fully_released_row_dropped(self):
        b = make_bill("101", "2026-00", 10000, penalty=500)
        b.apply_payment(paid_row("t-1", DUE, base=10000))
        penalty_only = paid_row("t-2", DUE, penalty=500)
        b.apply_payment(penalty_only)
        b.set_penalty(Money(0), DUE)

        b.release_penalty(penalty_only, 500)

        assert [p.transaction_ref for p in b.payments] == ["t-1"]
        b.check_invariants()
