"""Per-client water billing configuration."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from utility_billing.errors import NotFoundError, ValidationError
from utility_billing.models.billing_config import BillingConfigRecord
from utility_billing.services.currency import Money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingConfig:
    """Validated billing settings used by bill generation and penalty accrual."""

    client_id: str
    rate_per_m3: Money
    minimum_charge: Money = Money(0)
    penalty_rate: Decimal = Decimal("0.05")
    grace_period_days: int = 10
    compound_penalty: bool = False
    fiscal_year_start_month: int = 7
    due_day: int = 1

    def validate(self) -> "BillingConfig":
        """Check value ranges.

        Raises:
            ValidationError: Listing every invalid field
        """
        errors = []
        if not self.rate_per_m3.is_positive():
            errors.append("rate_per_m3 must be positive")
        if self.minimum_charge.is_negative():
            errors.append("minimum_charge must not be negative")
        if self.penalty_rate <= 0:
            errors.append("penalty_rate must be a positive number")
        if self.grace_period_days <= 0:
            errors.append("grace_period_days must be a positive number")
        if not 1 <= self.fiscal_year_start_month <= 12:
            errors.append("fiscal_year_start_month must be 1-12")
        if not 1 <= self.due_day <= 28:
            errors.append("due_day must be 1-28")
        if errors:
            raise ValidationError(
                f"Invalid water billing configuration for client {self.client_id}: "
                + ", ".join(errors)
            )
        return self

    @classmethod
    def from_record(cls, record: BillingConfigRecord) -> "BillingConfig":
        return cls(
            client_id=record.client_id,
            rate_per_m3=Money(record.rate_per_m3),
            minimum_charge=Money(record.minimum_charge),
            penalty_rate=Decimal(record.penalty_rate),
            grace_period_days=record.grace_period_days,
            compound_penalty=record.compound_penalty,
            fiscal_year_start_month=record.fiscal_year_start_month,
            due_day=record.due_day,
        )


class ConfigService:
    """Load and store billing configuration for a client."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_config(self, client_id: str) -> BillingConfig:
        """Load and validate a client's configuration.

        Raises:
            NotFoundError: If the client has no configuration
            ValidationError: If the stored configuration is invalid
        """
        result = await self.session.execute(
            select(BillingConfigRecord).where(BillingConfigRecord.client_id == client_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Water billing configuration not found for client {client_id}")
        return BillingConfig.from_record(record).validate()

    async def save_config(self, config: BillingConfig) -> BillingConfig:
        """Validate and upsert a configuration (caller commits)."""
        config.validate()

        result = await self.session.execute(
            select(BillingConfigRecord).where(BillingConfigRecord.client_id == config.client_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = BillingConfigRecord(client_id=config.client_id)
            self.session.add(record)

        record.rate_per_m3 = config.rate_per_m3.centavos
        record.minimum_charge = config.minimum_charge.centavos
        record.penalty_rate = config.penalty_rate
        record.grace_period_days = config.grace_period_days
        record.compound_penalty = config.compound_penalty
        record.fiscal_year_start_month = config.fiscal_year_start_month
        record.due_day = config.due_day
        await self.session.flush()

        logger.info("Saved billing config for client %s", config.client_id)
        return config


__all__ = ["BillingConfig", "ConfigService"]
