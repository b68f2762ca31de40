"""Per-client water billing configuration ORM model."""

from decimal import Decimal

from sqlalchemy import Boolean, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from utility_billing.models import Base, BaseModel


class BillingConfigRecord(Base, BaseModel):
    """Water billing settings for one client."""

    __tablename__ = "billing_configs"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    rate_per_m3: Mapped[int] = mapped_column(Integer, nullable=False, comment="centavos per m3")
    minimum_charge: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    penalty_rate: Mapped[Decimal] = mapped_column(
        Numeric(6, 4),
        nullable=False,
        default=Decimal("0.05"),
        comment="Monthly penalty as a fraction, 0.05 = 5%",
    )
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    compound_penalty: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fiscal_year_start_month: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<BillingConfigRecord(client_id={self.client_id}, rate_per_m3={self.rate_per_m3})>"


__all__ = ["BillingConfigRecord"]
