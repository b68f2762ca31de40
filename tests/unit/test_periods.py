"""Unit tests for fiscal periods."""

from datetime import date

import pytest

from utility_billing.errors import ValidationError
from utility_billing.services.periods import Period, add_months, fiscal_year_periods


class TestPeriod:
    """Fiscal years are named by the calendar year in which they end."""

    def test_first_month_of_july_fiscal_year(self):
        period = Period(2026, 0)

        assert period.period_id == "2026-00"
        assert period.calendar_year == 2025
        assert period.calendar_month == 7
        assert period.label == "Jul 2025"

    def test_last_month_of_july_fiscal_year(self):
        period = Period(2026, 11)

        assert period.calendar_year == 2026
        assert period.calendar_month == 6
        assert period.label == "Jun 2026"

    def test_calendar_fiscal_year(self):
        period = Period(2025, 2, start_month=1)

        assert period.calendar_year == 2025
        assert period.calendar_month == 3

    @pytest.mark.parametrize(
        "day,expected",
        [
            (date(2025, 7, 15), "2026-00"),
            (date(2025, 12, 1), "2026-05"),
            (date(2026, 1, 31), "2026-06"),
            (date(2026, 6, 30), "2026-11"),
        ],
    )
    def test_containing(self, day, expected):
        assert Period.containing(day).period_id == expected

    def test_from_id_round_trip(self):
        assert Period.from_id("2026-04") == Period(2026, 4)

    def test_invalid_ids(self):
        with pytest.raises(ValidationError):
            Period.from_id("2026")
        with pytest.raises(ValidationError):
            Period.from_id("2026-12")

    def test_due_date_uses_period_month(self):
        assert Period(2026, 0).due_date() == date(2025, 7, 1)
        assert Period(2026, 7).due_date(15) == date(2026, 2, 15)

    def test_previous_and_next_cross_year(self):
        assert Period(2026, 0).previous() == Period(2025, 11)
        assert Period(2025, 11).next() == Period(2026, 0)

    def test_ids_sort_chronologically(self):
        ids = [p.period_id for p in fiscal_year_periods(2026)]
        assert ids == sorted(ids)
        assert Period(2025, 11).period_id < Period(2026, 0).period_id


class TestAddMonths:
    def test_simple_shift(self):
        assert add_months(date(2025, 7, 12), 1) == date(2025, 8, 12)

    def test_year_rollover(self):
        assert add_months(date(2025, 12, 12), 2) == date(2026, 2, 12)

    def test_clamps_to_month_end(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
