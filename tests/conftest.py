"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime, timedelta
from typing import List, Optional
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from payouts_sdk.cache import TTLCache
from payouts_sdk.database import (
    Base,
    DonationStatus,
    DonationTransaction,
    Payout,
    PayoutStatus,
    ProcessorAccount,
    create_async_engine,
    get_async_session_factory,
)
from payouts_sdk.processor import BalanceEntry, SimulatorProcessorClient

CHURCH_ID = "church_grace"
ACCOUNT_ID = "acct_grace_001"


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class LedgerSeeder:
    """Writes accounts, donations and payouts the way other subsystems would."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def connect(self, church_id: str = CHURCH_ID, account_id: str = ACCOUNT_ID) -> None:
        async with self.session_factory() as session:
            session.add(ProcessorAccount(church_id=church_id, processor_account_id=account_id))
            await session.commit()

    async def donation(
        self,
        reference: Optional[str],
        amount: int,
        covered: int = 0,
        platform_fee: int = 0,
        status: str = DonationStatus.SUCCEEDED.value,
        church_id: str = CHURCH_ID,
        transaction_date: Optional[datetime] = None,
    ) -> DonationTransaction:
        async with self.session_factory() as session:
            txn = DonationTransaction(
                church_id=church_id,
                processor_payment_reference=reference,
                amount=amount,
                processing_fee_covered_by_donor=covered,
                platform_fee_amount=platform_fee,
                status=status,
                transaction_date=transaction_date or datetime.utcnow(),
            )
            session.add(txn)
            await session.commit()
            return txn

    async def payout(
        self,
        reference: str,
        amount: int,
        status: str = PayoutStatus.PAID.value,
        church_id: str = CHURCH_ID,
        payout_date: Optional[datetime] = None,
    ) -> Payout:
        async with self.session_factory() as session:
            payout = Payout(
                church_id=church_id,
                processor_payout_reference=reference,
                amount=amount,
                status=status,
                payout_date=payout_date or datetime.utcnow(),
            )
            session.add(payout)
            await session.commit()
            return payout

    async def get_payout(self, payout_id: str) -> Payout:
        async with self.session_factory() as session:
            return await session.get(Payout, payout_id)

    async def get_donation(self, transaction_id: str) -> DonationTransaction:
        async with self.session_factory() as session:
            return await session.get(DonationTransaction, transaction_id)


def charge(entry_id: str, reference: Optional[str], gross: int, fee: int) -> BalanceEntry:
    """A charge balance entry as the processor reports it."""
    return BalanceEntry(
        id=entry_id,
        type="charge",
        charge_reference=reference,
        gross_amount=gross,
        fee_amount=fee,
        net_amount=gross - fee,
        reporting_category="charge",
    )


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


# Database fixtures. A file database gives every session its own
# connection, which concurrent reconciliations rely on.
@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seeder(session_factory) -> LedgerSeeder:
    return LedgerSeeder(session_factory)


@pytest.fixture
def processor() -> SimulatorProcessorClient:
    return SimulatorProcessorClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stats_cache(clock) -> TTLCache:
    return TTLCache(capacity=16, ttl=5.0, clock=clock)


@pytest.fixture
def scenario_payout(processor):
    """Payout P1: two 5000 charges, the second with donor-covered fees."""
    entries: List[BalanceEntry] = [
        charge("txn_c1", "pi_c1", 5000, 150),
        charge("txn_c2", "pi_c2", 5200, 150),
        BalanceEntry(
            id="txn_po1",
            type="payout",
            gross_amount=-9700,
            net_amount=-9700,
            reporting_category="payout",
        ),
    ]
    return processor.add_payout(
        ACCOUNT_ID,
        amount=9700,
        entries=entries,
        payout_id="po_scenario_1",
        created_at=datetime.utcnow() - timedelta(days=1),
    )
