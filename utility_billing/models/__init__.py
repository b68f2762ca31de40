"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from utility_billing.models.bill import BillPayment, BillStatus, WaterBill  # noqa: E402
from utility_billing.models.billing_config import BillingConfigRecord  # noqa: E402
from utility_billing.models.credit_balance import (  # noqa: E402
    CreditBalance,
    CreditHistoryEntry,
    CreditReason,
)
from utility_billing.models.meter_reading import MeterReading  # noqa: E402
from utility_billing.models.water_payment import PaymentStatus, WaterPayment  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "WaterBill",
    "BillPayment",
    "BillStatus",
    "BillingConfigRecord",
    "CreditBalance",
    "CreditHistoryEntry",
    "CreditReason",
    "MeterReading",
    "WaterPayment",
    "PaymentStatus",
]
