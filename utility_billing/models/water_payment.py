"""Water payment ORM model: one row per recorded payment transaction."""

from datetime import date, datetime
from enum import Enum

from sqlalchemy import Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from utility_billing.models import Base, BaseModel


class PaymentStatus(str, Enum):
    """Lifecycle of a recorded payment."""

    RECORDED = "recorded"
    REVERSED = "reversed"


class WaterPayment(Base, BaseModel):
    """A payment transaction against a unit's water bills.

    ``transaction_ref`` is unique per client and is how retries are
    deduplicated and reversals find their allocations.
    """

    __tablename__ = "water_payments"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    transaction_ref: Mapped[str] = mapped_column(String(64), nullable=False)

    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Cash received, centavos")
    credit_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_balance_after: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outcome: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="underpayment, exact or overpayment"
    )

    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="cash")
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        String(16),
        nullable=False,
        default=PaymentStatus.RECORDED,
    )
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("client_id", "transaction_ref", name="uq_water_payment_ref"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaterPayment(id={self.id}, client_id={self.client_id}, unit_id={self.unit_id}, "
            f"transaction_ref={self.transaction_ref}, amount={self.amount}, status={self.status})>"
        )


__all__ = ["WaterPayment", "PaymentStatus"]
