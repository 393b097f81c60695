"""
Shared pytest fixtures for all tests.

This module provides common fixtures including:
- A file-backed SQLite ledger per test
- A seeder for groves, harvests, holdings and payouts
- Wired services (store, registry, aggregator, orchestrator, processor)
- A scriptable fake transfer executor
- FastAPI test client with overridden dependencies
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from harvest_ledger.api.dependencies import get_balance_cache
from harvest_ledger.infrastructure.balance_cache import BalanceCache
from harvest_ledger.infrastructure.database import Database, get_database
from harvest_ledger.infrastructure.holding_registry import HoldingRegistry
from harvest_ledger.infrastructure.ledger_store import LedgerStore
from harvest_ledger.infrastructure.tables import (
    GroveRow,
    HarvestRow,
    HoldingRow,
    LegacyHoldingRow,
    PayoutRow,
)
from harvest_ledger.infrastructure.transfer_executor import TransferOutcome, get_transfer_executor
from harvest_ledger.main import app
from harvest_ledger.services.application.balance_aggregator import BalanceAggregator
from harvest_ledger.services.application.distribution_orchestrator import DistributionOrchestrator
from harvest_ledger.services.application.payout_processor import PayoutProcessor
from harvest_ledger.services.domain.distribution_calculator import (
    DistributionCalculator,
    DistributionConfig,
)


FARMER = "0.0.5001"
ALICE = "0.0.1001"
BOB = "0.0.1002"
CAROL = "0.0.1003"
EVM_INVESTOR = "0x" + "a1" * 20

HARVEST_AT = datetime(2026, 3, 1, 12, 0)
BEFORE_HARVEST = HARVEST_AT - timedelta(days=30)
AFTER_HARVEST = HARVEST_AT + timedelta(days=2)


# ============================================================
# Ledger Seeding
# ============================================================

class LedgerSeeder:
    """Writes platform-owned rows the ledger only reads."""

    def __init__(self, database: Database):
        self.database = database

    def grove(self, name: str = "Kiambu Avocado Grove", farmer: str = FARMER, tokens: int = 1000) -> int:
        with self.database.session_scope() as session:
            row = GroveRow(name=name, farmer_address=farmer, total_tokens_issued=tokens)
            session.add(row)
            session.flush()
            return row.id

    def harvest(self, grove_id: int, gross: int = 100_000, harvested_at: datetime = HARVEST_AT) -> int:
        with self.database.session_scope() as session:
            row = HarvestRow(grove_id=grove_id, gross_revenue=gross, harvested_at=harvested_at)
            session.add(row)
            session.flush()
            return row.id

    def holding(
        self,
        grove_id: int,
        investor: str,
        tokens: int,
        acquired_at: datetime = BEFORE_HARVEST,
        is_active: bool = True,
    ) -> int:
        with self.database.session_scope() as session:
            row = HoldingRow(
                investor_address=investor,
                grove_id=grove_id,
                token_amount=tokens,
                acquired_at=acquired_at,
                is_active=is_active,
            )
            session.add(row)
            session.flush()
            return row.id

    def legacy_holding(
        self,
        grove_id: int,
        holder: str,
        tokens: int,
        purchased_at: datetime = BEFORE_HARVEST,
    ) -> int:
        with self.database.session_scope() as session:
            row = LegacyHoldingRow(
                holder_address=holder,
                grove_id=grove_id,
                token_amount=tokens,
                purchase_price=tokens * 100,
                purchase_date=purchased_at,
            )
            session.add(row)
            session.flush()
            return row.id

    def payout(self, beneficiary: str, amount: int, status: str = "completed", kind: str = "withdrawal") -> str:
        request_id = f"seed_{beneficiary}_{amount}_{status}"
        with self.database.session_scope() as session:
            session.add(PayoutRow(
                id=request_id,
                beneficiary=beneficiary,
                kind=kind,
                amount=amount,
                earning_record_ids=[],
                status=status,
                requested_at=HARVEST_AT,
            ))
        return request_id

    def example_grove(self) -> tuple[int, int]:
        """
        Grove with A (600) and B (400) eligible and C (300) bought after the
        harvest of 100,000.
        """
        grove_id = self.grove()
        harvest_id = self.harvest(grove_id)
        self.holding(grove_id, ALICE, 600)
        self.holding(grove_id, BOB, 400)
        self.holding(grove_id, CAROL, 300, acquired_at=AFTER_HARVEST)
        return grove_id, harvest_id


# ============================================================
# Fake Transfer Executor
# ============================================================

class FakeTransferExecutor:
    """Scriptable stand-in for the external ledger network."""

    def __init__(self):
        self.outcome = TransferOutcome(success=True, reference="0x" + "ab" * 32)
        self.error: Optional[Exception] = None
        self.delay: float = 0
        self.calls: list[dict] = []
        self.known: dict[str, TransferOutcome] = {}
        self.closed = False

    async def transfer(self, address, amount, memo, idempotency_key):
        self.calls.append({
            "address": address,
            "amount": amount,
            "memo": memo,
            "idempotency_key": idempotency_key,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.outcome

    async def lookup(self, idempotency_key):
        return self.known.get(idempotency_key)

    async def close(self):
        self.closed = True


# ============================================================
# Ledger Fixtures
# ============================================================

@pytest.fixture
def database(tmp_path) -> Database:
    """File-backed SQLite ledger so several threads can share it."""
    db = Database(url=f"sqlite:///{tmp_path / 'ledger.db'}", echo=False)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def seeder(database) -> LedgerSeeder:
    return LedgerSeeder(database)


@pytest.fixture
def store(database) -> LedgerStore:
    return LedgerStore(database)


@pytest.fixture
def registry(database) -> HoldingRegistry:
    return HoldingRegistry(database)


@pytest.fixture
def cache() -> BalanceCache:
    return BalanceCache(ttl_seconds=300)


@pytest.fixture
def aggregator(store, cache) -> BalanceAggregator:
    return BalanceAggregator(store=store, cache=cache, maturation_days=0)


@pytest.fixture
def calculator() -> DistributionCalculator:
    return DistributionCalculator(DistributionConfig(farmer_share_ratio=0.30))


@pytest.fixture
def orchestrator(store, registry, calculator, aggregator) -> DistributionOrchestrator:
    return DistributionOrchestrator(
        store=store,
        registry=registry,
        calculator=calculator,
        aggregator=aggregator,
    )


@pytest.fixture
def executor() -> FakeTransferExecutor:
    return FakeTransferExecutor()


@pytest.fixture
def processor(store, aggregator, executor) -> PayoutProcessor:
    return PayoutProcessor(
        store=store,
        aggregator=aggregator,
        executor=executor,
        transfer_timeout=1.0,
        withdrawal_limit_ratio=1.0,
    )


# ============================================================
# FastAPI Test Client Fixtures
# ============================================================

@pytest.fixture
def test_client(database, cache, executor) -> TestClient:
    """Create a synchronous test client wired to the per-test ledger."""
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_balance_cache] = lambda: cache
    app.dependency_overrides[get_transfer_executor] = lambda: executor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
