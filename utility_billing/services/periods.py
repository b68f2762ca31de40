"""Fiscal billing periods.

A fiscal year is named after the calendar year in which it ends. With a
July start, FY2026 runs from July 2025 (fiscal month 0) to June 2026
(fiscal month 11). Period ids are ``"YYYY-MM"`` with the fiscal year and the
zero-based fiscal month, so they sort chronologically as strings.
"""

import calendar
from dataclasses import dataclass
from datetime import date

from utility_billing.errors import ValidationError

MONTHS_PER_YEAR = 12


@dataclass(frozen=True, order=True)
class Period:
    """One billing cycle within a fiscal year."""

    fiscal_year: int
    fiscal_month: int
    start_month: int = 7

    def __post_init__(self):
        if not 0 <= self.fiscal_month < MONTHS_PER_YEAR:
            raise ValidationError(f"Fiscal month must be 0-11, got {self.fiscal_month}")
        if not 1 <= self.start_month <= MONTHS_PER_YEAR:
            raise ValidationError(f"Fiscal year start month must be 1-12, got {self.start_month}")

    @classmethod
    def from_id(cls, period_id: str, start_month: int = 7) -> "Period":
        try:
            year_str, month_str = period_id.split("-")
            return cls(int(year_str), int(month_str), start_month)
        except ValueError as e:
            raise ValidationError(f"Invalid period id: {period_id!r}") from e

    @classmethod
    def containing(cls, day: date, start_month: int = 7) -> "Period":
        """Return the fiscal period whose calendar month contains ``day``."""
        fiscal_month = (day.month - start_month) % MONTHS_PER_YEAR
        # Fiscal year named after the calendar year in which it ends
        if start_month == 1 or day.month < start_month:
            fiscal_year = day.year
        else:
            fiscal_year = day.year + 1
        return cls(fiscal_year, fiscal_month, start_month)

    @property
    def period_id(self) -> str:
        return f"{self.fiscal_year}-{self.fiscal_month:02d}"

    @property
    def calendar_month(self) -> int:
        return (self.start_month - 1 + self.fiscal_month) % MONTHS_PER_YEAR + 1

    @property
    def calendar_year(self) -> int:
        if self.start_month == 1:
            return self.fiscal_year
        if self.calendar_month >= self.start_month:
            return self.fiscal_year - 1
        return self.fiscal_year

    @property
    def first_day(self) -> date:
        return date(self.calendar_year, self.calendar_month, 1)

    @property
    def label(self) -> str:
        """Readable label, e.g. ``Jul 2025``."""
        return f"{calendar.month_abbr[self.calendar_month]} {self.calendar_year}"

    def due_date(self, due_day: int = 1) -> date:
        """Due date under the bill-period policy: day ``due_day`` of the period's month."""
        return date(self.calendar_year, self.calendar_month, due_day)

    def previous(self) -> "Period":
        if self.fiscal_month == 0:
            return Period(self.fiscal_year - 1, MONTHS_PER_YEAR - 1, self.start_month)
        return Period(self.fiscal_year, self.fiscal_month - 1, self.start_month)

    def next(self) -> "Period":
        if self.fiscal_month == MONTHS_PER_YEAR - 1:
            return Period(self.fiscal_year + 1, 0, self.start_month)
        return Period(self.fiscal_year, self.fiscal_month + 1, self.start_month)

    def __str__(self) -> str:
        return self.period_id


def fiscal_year_periods(fiscal_year: int, start_month: int = 7) -> list[Period]:
    return [Period(fiscal_year, month, start_month) for month in range(MONTHS_PER_YEAR)]


def add_months(day: date, months: int) -> date:
    """Shift a date by whole calendar months, clamping to the month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // MONTHS_PER_YEAR
    month = month_index % MONTHS_PER_YEAR + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


__all__ = ["Period", "fiscal_year_periods", "add_months", "MONTHS_PER_YEAR"]
