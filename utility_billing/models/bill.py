"""Water bill ORM models: one bill per unit per fiscal period, plus its payments."""

from datetime import date
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from utility_billing.errors import InconsistentStateError
from utility_billing.models import Base, BaseModel
from utility_billing.services.currency import Money


class BillStatus(str, Enum):
    """Payment status of a bill. Always derived from the amounts."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    NO_BILL = "no-bill"
    """Only used in the aggregated view for periods with readings but no bill"""


def derive_status(paid_amount: int, total_owed: int) -> BillStatus:
    if paid_amount >= total_owed:
        return BillStatus.PAID
    if paid_amount > 0:
        return BillStatus.PARTIAL
    return BillStatus.UNPAID


class WaterBill(Base, BaseModel):
    """One unit's water charge for one billing period.

    Amount columns hold integer centavos. ``paid_amount`` and the per-component
    paid columns are totals over ``payments`` and are only changed through
    ``apply_payment``, ``release_penalty`` and ``remove_payments``.
    """

    __tablename__ = "water_bills"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    period_id: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        comment="Fiscal period, 'YYYY-MM' with zero-based fiscal month",
    )
    unit_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Meter data the charge was computed from
    prior_reading: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_reading: Mapped[int | None] = mapped_column(Integer, nullable=True)
    consumption: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="m3")

    # Charges (centavos)
    base_charge: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    penalty_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    previous_balance_carry: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Opening arrears not represented by any other bill",
    )

    # Payment totals (centavos)
    paid_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    carry_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    penalty_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[BillStatus] = mapped_column(
        String(16),
        nullable=False,
        default=BillStatus.UNPAID,
        index=True,
    )
    last_penalty_update: Mapped[date | None] = mapped_column(Date, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    payments: Mapped[list["BillPayment"]] = relationship(
        "BillPayment",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillPayment.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("client_id", "unit_id", "period_id", name="uq_water_bill_unit_period"),
        Index("idx_water_bill_client_year", "client_id", "fiscal_year"),
        Index("idx_water_bill_client_unit", "client_id", "unit_id"),
    )

    @property
    def total_owed(self) -> Money:
        return Money(self.base_charge + self.penalty_amount + self.previous_balance_carry)

    @property
    def outstanding(self) -> Money:
        return (self.total_owed - Money(self.paid_amount)).clamp_zero()

    @property
    def unpaid_carry(self) -> Money:
        return Money(self.previous_balance_carry - self.carry_paid).clamp_zero()

    @property
    def unpaid_base(self) -> Money:
        return Money(self.base_charge - self.base_paid).clamp_zero()

    @property
    def unpaid_penalty(self) -> Money:
        return Money(self.penalty_amount - self.penalty_paid).clamp_zero()

    def derived_status(self) -> BillStatus:
        return derive_status(self.paid_amount, self.total_owed.centavos)

    def refresh_status(self) -> None:
        self.status = self.derived_status()

    def set_penalty(self, penalty: Money, as_of: date) -> bool:
        """Store a recomputed penalty. Returns True if the amount changed."""
        changed = penalty.centavos != self.penalty_amount
        self.penalty_amount = penalty.centavos
        self.last_penalty_update = as_of
        self.refresh_status()
        return changed

    def apply_payment(self, payment: "BillPayment") -> None:
        """Append a payment and update the paid totals and status."""
        self.payments.append(payment)
        self.paid_amount += payment.amount
        self.carry_paid += payment.carry_portion
        self.base_paid += payment.base_portion
        self.penalty_paid += payment.penalty_portion
        self.refresh_status()

    def release_penalty(self, payment: "BillPayment", amount: int) -> None:
        """Take ``amount`` of penalty back out of ``payment``; the caller credits it.

        Cash is released before credit. A payment left with nothing is dropped.
        """
        payment.penalty_portion -= amount
        payment.amount -= amount
        from_cash = min(amount, payment.cash_amount)
        payment.cash_amount -= from_cash
        payment.credit_amount -= amount - from_cash
        self.paid_amount -= amount
        self.penalty_paid -= amount
        if payment.amount == 0:
            self.payments.remove(payment)
        self.refresh_status()

    def remove_payments(self, transaction_ref: str) -> list["BillPayment"]:
        """Remove every payment tagged with ``transaction_ref`` (reversal only)."""
        removed = [p for p in self.payments if p.transaction_ref == transaction_ref]
        for payment in removed:
            self.payments.remove(payment)
            self.paid_amount -= payment.amount
            self.carry_paid -= payment.carry_portion
            self.base_paid -= payment.base_portion
            self.penalty_paid -= payment.penalty_portion
        self.refresh_status()
        return removed

    def check_invariants(self) -> None:
        """Raise InconsistentStateError if stored totals disagree with payments."""
        problems = []
        payments_total = sum(p.amount for p in self.payments)
        if self.paid_amount != payments_total:
            problems.append(f"paid_amount {self.paid_amount} != sum(payments) {payments_total}")
        components = self.carry_paid + self.base_paid + self.penalty_paid
        if components != self.paid_amount:
            problems.append(f"paid components {components} != paid_amount {self.paid_amount}")
        # No component may hold more paid than it owes
        for name, paid, owed in (
            ("carry", self.carry_paid, self.previous_balance_carry),
            ("base", self.base_paid, self.base_charge),
            ("penalty", self.penalty_paid, self.penalty_amount),
        ):
            if paid > owed:
                problems.append(f"{name} paid {paid} > {name} owed {owed}")
        for payment in self.payments:
            problem = payment.split_problem()
            if problem:
                problems.append(problem)
        if BillStatus(self.status) != self.derived_status():
            problems.append(f"status {self.status} != derived {self.derived_status().value}")
        if problems:
            raise InconsistentStateError(
                f"Bill {self.client_id}/{self.unit_id}/{self.period_id}: " + "; ".join(problems)
            )

    def __repr__(self) -> str:
        return (
            f"<WaterBill(id={self.id}, client_id={self.client_id}, unit_id={self.unit_id}, "
            f"period_id={self.period_id}, base_charge={self.base_charge}, "
            f"paid_amount={self.paid_amount}, status={self.status})>"
        )


class BillPayment(Base, BaseModel):
    """One allocation of a payment to a bill.

    ``amount`` is split two ways for audit: by source (cash/credit) and by
    component (carry/base/penalty). Both splits sum to ``amount``.
    """

    __tablename__ = "water_bill_payments"

    bill_id: Mapped[int] = mapped_column(
        ForeignKey("water_bills.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_ref: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    cash_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    carry_portion: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_portion: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    penalty_portion: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bill: Mapped["WaterBill"] = relationship("WaterBill", back_populates="payments")

    def split_problem(self) -> str | None:
        if self.cash_amount + self.credit_amount != self.amount:
            return f"payment {self.transaction_ref}: cash + credit != amount"
        if self.carry_portion + self.base_portion + self.penalty_portion != self.amount:
            return f"payment {self.transaction_ref}: carry + base + penalty != amount"
        return None

    def __repr__(self) -> str:
        return (
            f"<BillPayment(id={self.id}, bill_id={self.bill_id}, "
            f"transaction_ref={self.transaction_ref}, amount={self.amount})>"
        )


__all__ = ["WaterBill", "BillPayment", "BillStatus", "derive_status"]
