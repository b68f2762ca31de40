"""Meter reading ORM model."""

from datetime import date

from sqlalchemy import Date, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from utility_billing.models import Base, BaseModel


class MeterReading(Base, BaseModel):
    """Cumulative water meter reading (m3) for one unit at the end of a period."""

    __tablename__ = "meter_readings"

    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    period_id: Mapped[str] = mapped_column(String(7), nullable=False)
    unit_id: Mapped[str] = mapped_column(String(32), nullable=False)
    reading: Mapped[int] = mapped_column(Integer, nullable=False)
    reading_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("client_id", "unit_id", "period_id", name="uq_meter_reading_unit_period"),
    )

    def __repr__(self) -> str:
        return (
            f"<MeterReading(id={self.id}, unit_id={self.unit_id}, "
            f"period_id={self.period_id}, reading={self.reading})>"
        )


__all__ = ["MeterReading"]
