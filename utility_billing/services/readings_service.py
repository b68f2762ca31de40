"""Meter readings: cumulative water meter values per unit per period."""

import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from utility_billing.errors import ValidationError
from utility_billing.models.meter_reading import MeterReading
from utility_billing.services.bill_store import BillStore
from utility_billing.services.config_service import ConfigService
from utility_billing.services.periods import Period

logger = logging.getLogger(__name__)


class ReadingsService:
    """Record and list meter readings (caller commits)."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.store = BillStore(session)

    async def record_readings(
        self,
        client_id: str,
        fiscal_year: int,
        fiscal_month: int,
        readings: dict[str, int],
        reading_date: date | None = None,
    ) -> int:
        """Insert or overwrite readings for a period.

        Returns:
            Number of readings written
        """
        invalid = sorted(
            unit_id
            for unit_id, value in readings.items()
            if isinstance(value, bool) or not isinstance(value, int) or value < 0
        )
        if invalid:
            raise ValidationError(
                "Readings must be non-negative whole m3 values; invalid for units " + ", ".join(invalid)
            )

        config = await ConfigService(self.session).get_config(client_id)
        period = Period(fiscal_year, fiscal_month, config.fiscal_year_start_month)

        for unit_id, value in readings.items():
            reading = await self.store.get_reading(client_id, unit_id, period.period_id)
            if reading is None:
                reading = MeterReading(
                    client_id=client_id,
                    fiscal_year=fiscal_year,
                    period_id=period.period_id,
                    unit_id=unit_id,
                )
                self.store.add_reading(reading)
            reading.reading = value
            reading.reading_date = reading_date

        await self.store.flush()
        logger.info(
            "Recorded %d meter readings for %s %s", len(readings), client_id, period.period_id
        )
        return len(readings)

    async def list_readings(self, client_id: str, fiscal_year: int, fiscal_month: int) -> list[MeterReading]:
        config = await ConfigService(self.session).get_config(client_id)
        period = Period(fiscal_year, fiscal_month, config.fiscal_year_start_month)
        return await self.store.list_readings_for_periods(client_id, [period.period_id])


__all__ = ["ReadingsService"]
