"""Bill store adapter: keyed access to bills, credit balances, payments and readings.

Keys:
- bills: (client_id, fiscal_year, unit_id, period_id)
- credit balances: (client_id, unit_id)
- payments: (client_id, transaction_ref)

Year-level reads are single batched queries. Driver errors are translated
into the billing error taxonomy here so services never see SQLAlchemy
exceptions.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from utility_billing.errors import ConcurrentModificationError, StoreUnavailableError
from utility_billing.models.bill import BillPayment, BillStatus, WaterBill
from utility_billing.models.credit_balance import CreditBalance
from utility_billing.models.meter_reading import MeterReading
from utility_billing.models.water_payment import WaterPayment

logger = logging.getLogger(__name__)

_UNIQUE_MARKERS = ("unique", "duplicate")


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Map SQLAlchemy failures onto StoreUnavailable/ConcurrentModification errors."""
    try:
        yield
    except StaleDataError as e:
        raise ConcurrentModificationError(f"{operation}: record changed concurrently") from e
    except sa_exc.IntegrityError as e:
        if any(marker in str(e.orig).lower() for marker in _UNIQUE_MARKERS):
            raise ConcurrentModificationError(f"{operation}: record created concurrently") from e
        raise
    except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as e:
        logger.warning("Store unavailable during %s: %s", operation, e)
        raise StoreUnavailableError(f"{operation}: store unavailable") from e
    except sa_exc.DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailableError(f"{operation}: connection lost") from e
        raise


class BillStore:
    """Async store adapter bound to one session (one unit of work)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _scalars(self, stmt, operation: str) -> list:
        with translate_store_errors(operation):
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

    async def _scalar(self, stmt, operation: str):
        with translate_store_errors(operation):
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

    # Bills

    async def get_bill(self, client_id: str, unit_id: str, period_id: str) -> WaterBill | None:
        stmt = select(WaterBill).where(
            WaterBill.client_id == client_id,
            WaterBill.unit_id == unit_id,
            WaterBill.period_id == period_id,
        )
        return await self._scalar(stmt, "get_bill")

    async def list_bills_for_year(self, client_id: str, fiscal_year: int) -> list[WaterBill]:
        """All bills of a fiscal year, ordered by unit then period."""
        stmt = (
            select(WaterBill)
            .where(WaterBill.client_id == client_id, WaterBill.fiscal_year == fiscal_year)
            .order_by(WaterBill.unit_id, WaterBill.period_id)
        )
        return await self._scalars(stmt, "list_bills_for_year")

    async def list_bills_for_period(self, client_id: str, period_id: str) -> list[WaterBill]:
        stmt = (
            select(WaterBill)
            .where(WaterBill.client_id == client_id, WaterBill.period_id == period_id)
            .order_by(WaterBill.unit_id)
        )
        return await self._scalars(stmt, "list_bills_for_period")

    async def list_bills_for_unit(
        self,
        client_id: str,
        unit_id: str,
        fiscal_year: int | None = None,
        from_period_id: str | None = None,
    ) -> list[WaterBill]:
        """A unit's bills ordered oldest period first, optionally limited to a range."""
        stmt = select(WaterBill).where(
            WaterBill.client_id == client_id,
            WaterBill.unit_id == unit_id,
        )
        if fiscal_year is not None:
            stmt = stmt.where(WaterBill.fiscal_year == fiscal_year)
        if from_period_id is not None:
            stmt = stmt.where(WaterBill.period_id >= from_period_id)
        return await self._scalars(stmt.order_by(WaterBill.period_id), "list_bills_for_unit")

    async def list_unpaid_bills(self, client_id: str, unit_id: str) -> list[WaterBill]:
        """A unit's bills that are not fully paid, oldest period first."""
        stmt = (
            select(WaterBill)
            .where(
                WaterBill.client_id == client_id,
                WaterBill.unit_id == unit_id,
                WaterBill.status != BillStatus.PAID.value,
            )
            .order_by(WaterBill.period_id)
        )
        return await self._scalars(stmt, "list_unpaid_bills")

    async def list_client_bills(
        self, client_id: str, unit_ids: list[str] | None = None
    ) -> list[WaterBill]:
        stmt = select(WaterBill).where(WaterBill.client_id == client_id)
        if unit_ids is not None:
            stmt = stmt.where(WaterBill.unit_id.in_(unit_ids))
        stmt = stmt.order_by(WaterBill.period_id, WaterBill.unit_id)
        return await self._scalars(stmt, "list_client_bills")

    async def list_bills_with_payment(self, client_id: str, transaction_ref: str) -> list[WaterBill]:
        """Bills carrying at least one allocation tagged with ``transaction_ref``."""
        stmt = (
            select(WaterBill)
            .join(BillPayment, BillPayment.bill_id == WaterBill.id)
            .where(
                WaterBill.client_id == client_id,
                BillPayment.transaction_ref == transaction_ref,
            )
            .distinct()
            .order_by(WaterBill.period_id)
        )
        return await self._scalars(stmt, "list_bills_with_payment")

    def add_bill(self, bill: WaterBill) -> None:
        self.session.add(bill)

    async def delete_bill(self, bill: WaterBill) -> None:
        with translate_store_errors("delete_bill"):
            await self.session.delete(bill)

    # Credit balances

    async def get_credit_balance(self, client_id: str, unit_id: str) -> CreditBalance | None:
        stmt = select(CreditBalance).where(
            CreditBalance.client_id == client_id,
            CreditBalance.unit_id == unit_id,
        )
        return await self._scalar(stmt, "get_credit_balance")

    async def list_credit_balances(
        self, client_id: str, unit_ids: list[str] | None = None
    ) -> list[CreditBalance]:
        stmt = select(CreditBalance).where(CreditBalance.client_id == client_id)
        if unit_ids is not None:
            stmt = stmt.where(CreditBalance.unit_id.in_(unit_ids))
        return await self._scalars(stmt.order_by(CreditBalance.unit_id), "list_credit_balances")

    def add_credit_balance(self, credit: CreditBalance) -> None:
        self.session.add(credit)

    # Payments

    async def get_payment(self, client_id: str, transaction_ref: str) -> WaterPayment | None:
        stmt = select(WaterPayment).where(
            WaterPayment.client_id == client_id,
            WaterPayment.transaction_ref == transaction_ref,
        )
        return await self._scalar(stmt, "get_payment")

    async def list_payments(
        self, client_id: str, unit_id: str, fiscal_year: int | None = None
    ) -> list[WaterPayment]:
        """A unit's payments, newest first."""
        stmt = select(WaterPayment).where(
            WaterPayment.client_id == client_id,
            WaterPayment.unit_id == unit_id,
        )
        if fiscal_year is not None:
            # Payments are tagged to a fiscal year through the bills they paid
            paid_refs = (
                select(BillPayment.transaction_ref)
                .join(WaterBill, WaterBill.id == BillPayment.bill_id)
                .where(WaterBill.client_id == client_id, WaterBill.fiscal_year == fiscal_year)
            )
            stmt = stmt.where(WaterPayment.transaction_ref.in_(paid_refs))
        stmt = stmt.order_by(WaterPayment.payment_date.desc(), WaterPayment.id.desc())
        return await self._scalars(stmt, "list_payments")

    def add_payment(self, payment: WaterPayment) -> None:
        self.session.add(payment)

    # Readings

    async def get_reading(self, client_id: str, unit_id: str, period_id: str) -> MeterReading | None:
        stmt = select(MeterReading).where(
            MeterReading.client_id == client_id,
            MeterReading.unit_id == unit_id,
            MeterReading.period_id == period_id,
        )
        return await self._scalar(stmt, "get_reading")

    async def list_readings_for_periods(
        self, client_id: str, period_ids: list[str], unit_id: str | None = None
    ) -> list[MeterReading]:
        stmt = select(MeterReading).where(
            MeterReading.client_id == client_id, MeterReading.period_id.in_(period_ids)
        )
        if unit_id is not None:
            stmt = stmt.where(MeterReading.unit_id == unit_id)
        stmt = stmt.order_by(MeterReading.unit_id, MeterReading.period_id)
        return await self._scalars(stmt, "list_readings_for_periods")

    def add_reading(self, reading: MeterReading) -> None:
        self.session.add(reading)

    # Unit of work

    async def flush(self) -> None:
        with translate_store_errors("flush"):
            await self.session.flush()

    async def commit(self) -> None:
        with translate_store_errors("commit"):
            await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


__all__ = ["BillStore", "translate_store_errors"]
