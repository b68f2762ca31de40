"""Shared application state and FastAPI dependencies."""

from dataclasses import dataclass, field
from datetime import date
from typing import AsyncGenerator, Callable

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utility_billing.config import Settings
from utility_billing.services.aggregation_service import AggregatedViewCache
from utility_billing.services.bills_service import BillsService
from utility_billing.services.concurrency import UnitLockRegistry
from utility_billing.services.payment_service import WaterPaymentService


@dataclass
class BillingContext:
    """Process-wide billing state: sessions, the view cache and unit locks."""

    session_factory: async_sessionmaker[AsyncSession]
    settings: Settings
    clock: Callable[[], date] = date.today
    cache: AggregatedViewCache = field(default_factory=AggregatedViewCache)
    locks: UnitLockRegistry = field(default_factory=UnitLockRegistry)

    def payments(self) -> WaterPaymentService:
        return WaterPaymentService(self.session_factory, self.cache, self.locks, self.clock, self.settings)

    def bills(self) -> BillsService:
        return BillsService(self.session_factory, self.cache, self.clock, self.settings)


def get_context(request: Request) -> BillingContext:
    return request.app.state.billing


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session for read and single-step endpoints; the endpoint commits."""
    async with get_context(request).session_factory() as session:
        yield session


__all__ = ["BillingContext", "get_context", "get_session"]
