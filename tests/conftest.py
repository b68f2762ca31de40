"""Pytest configuration: in-memory database and water billing fixtures."""

from decimal import Decimal

import pytest

from utility_billing.config import Settings
from utility_billing.models.bill import WaterBill
from utility_billing.services.aggregation_service import AggregatedViewCache
from utility_billing.services.bills_service import BillsService
from utility_billing.services.concurrency import UnitLockRegistry
from utility_billing.services.config_service import BillingConfig, ConfigService
from utility_billing.services.currency import Money
from utility_billing.services.db import build_engine, build_session_factory, create_schema
from utility_billing.services.payment_service import WaterPaymentService
from tests.factories import CLIENT_ID, TODAY


@pytest.fixture
def test_settings():
    """Settings with fast retries."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        store_retry_attempts=3,
        store_retry_wait_seconds=0,
        concurrency_retry_attempts=3,
    )


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite+aiosqlite://")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def billing_config():
    return BillingConfig(
        client_id=CLIENT_ID,
        rate_per_m3=Money(5000),
        minimum_charge=Money(0),
        penalty_rate=Decimal("0.05"),
        grace_period_days=10,
    )


@pytest.fixture
async def configured(session_factory, billing_config):
    """Store the client's billing configuration."""
    async with session_factory() as session:
        await ConfigService(session).save_config(billing_config)
        await session.commit()
    return billing_config


@pytest.fixture
def add_bills(session_factory):
    """Persist bills built with make_bill."""

    async def _add(*bills: WaterBill) -> None:
        async with session_factory() as session:
            session.add_all(bills)
            await session.commit()

    return _add


@pytest.fixture
def clock():
    return lambda: TODAY


@pytest.fixture
def cache():
    return AggregatedViewCache()


@pytest.fixture
def payment_service(session_factory, cache, clock, test_settings, configured):
    return WaterPaymentService(session_factory, cache, UnitLockRegistry(), clock, test_settings)


@pytest.fixture
def bills_service(session_factory, cache, clock, test_settings, configured):
    return BillsService(session_factory, cache, clock, test_settings)
