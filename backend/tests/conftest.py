"""Shared fixtures.

Every test that touches the ledger gets its own SQLite database file so
tests never see each other's accounts.
"""

import pytest
import pytest_asyncio

from backend import load_all_models
from backend.database.db import create_async_engine_and_session, create_tables
from backend.src.billing.credits.balance import BalanceQueryService
from backend.src.billing.credits.integration import BillingIntegration
from backend.src.billing.credits.ledger import LedgerStore
from backend.src.billing.credits.orchestrator import DebitRefundOrchestrator
from backend.src.billing.domain.transaction import TransactionKind

load_all_models()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = create_async_engine_and_session(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return LedgerStore(session_factory=session_factory, initial_grant=0, cache_enabled=False)


@pytest_asyncio.fixture
async def orchestrator(ledger):
    orchestrator = DebitRefundOrchestrator(ledger=ledger, max_attempts=3, retry_backoff=0)
    yield orchestrator
    await orchestrator.drain()


@pytest.fixture
def balances(ledger):
    return BalanceQueryService(ledger=ledger, cache_enabled=False)


@pytest.fixture
def integration(ledger, orchestrator, balances):
    return BillingIntegration(ledger=ledger, orchestrator=orchestrator, balances=balances)


@pytest.fixture
def fund(ledger):
    """Give an account a starting balance through a single ADJUSTMENT entry."""

    async def _fund(account_id: str, amount: int):
        return await ledger.record_movement(account_id, amount, TransactionKind.ADJUSTMENT, "Test funding")

    return _fund
