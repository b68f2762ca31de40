"""Credit balance ORM models: one balance per unit plus its append-only history."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from utility_billing.models import Base, BaseModel


class CreditReason(str, Enum):
    """Why a credit balance changed."""

    APPLIED = "applied"
    """Overpayment added to credit"""

    USED = "used"
    """Credit consumed to pay bills"""

    RESTORED = "restored"
    """Consumed credit given back by a reversal"""

    ADJUSTED = "adjusted"
    """Manual correction, or reversal of applied credit"""


class CreditBalance(Base, BaseModel):
    """Standing credit of one unit, independent of billing period.

    ``balance`` always equals the signed sum of ``history`` amounts and is
    never negative. Rows are created lazily and never deleted.
    """

    __tablename__ = "credit_balances"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String(32), nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="centavos")
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list["CreditHistoryEntry"]] = relationship(
        "CreditHistoryEntry",
        back_populates="credit_balance",
        cascade="all",
        order_by="CreditHistoryEntry.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("client_id", "unit_id", name="uq_credit_balance_unit"),
    )

    def history_total(self) -> int:
        return sum(entry.amount for entry in self.history)

    def __repr__(self) -> str:
        return (
            f"<CreditBalance(id={self.id}, client_id={self.client_id}, "
            f"unit_id={self.unit_id}, balance={self.balance})>"
        )


class CreditHistoryEntry(Base, BaseModel):
    """Signed change to a credit balance. Never edited after insert."""

    __tablename__ = "credit_history_entries"

    credit_balance_id: Mapped[int] = mapped_column(
        ForeignKey("credit_balances.id"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Signed centavos")
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[CreditReason] = mapped_column(String(16), nullable=False)
    transaction_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reverses_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("credit_history_entries.id"),
        nullable=True,
        comment="Entry this one compensates, for reversals",
    )
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    credit_balance: Mapped["CreditBalance"] = relationship(
        "CreditBalance",
        back_populates="history",
    )

    def __repr__(self) -> str:
        return (
            f"<CreditHistoryEntry(id={self.id}, amount={self.amount}, "
            f"reason={self.reason}, transaction_ref={self.transaction_ref})>"
        )


__all__ = ["CreditBalance", "CreditHistoryEntry", "CreditReason"]
