"""Tests for ledger reconciliation.

Tests cover:
- Balance vs ledger sum verification
- Detection of debits that were neither linked nor refunded
"""

import pytest
from sqlalchemy import update

from backend.src.billing.domain.tables import CreditAccountRecord
from backend.src.billing.domain.transaction import TransactionKind
from backend.src.billing.payments.reconciliation import ReconciliationService


@pytest.fixture
def reconciliation(session_factory):
    return ReconciliationService(session_factory=session_factory)


class TestLedgerConsistency:
    """Tests for balance verification."""

    @pytest.mark.asyncio
    async def test_consistent_ledger(self, reconciliation, ledger, fund):
        """Test a ledger written through the store has no discrepancies."""
        await fund('user-1', 10)
        await ledger.record_movement('user-1', -4, TransactionKind.CONSUMPTION, "Voice agent creation")
        await ledger.get_account('user-2')

        results = await reconciliation.verify_ledger_consistency()

        assert results['checked'] == 2
        assert results['discrepancies_found'] == []

    @pytest.mark.asyncio
    async def test_tampered_balance_reported(self, reconciliation, session_factory, fund):
        """Test a balance changed outside the ledger is flagged, not fixed."""
        await fund('user-1', 10)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CreditAccountRecord).where(CreditAccountRecord.account_id == 'user-1').values(balance=13)
                )

        results = await reconciliation.verify_ledger_consistency()

        assert results['discrepancies_found'] == [
            {'account_id': 'user-1', 'balance': 13, 'ledger_total': 10, 'difference': 3}
        ]
        async with session_factory() as session:
            record = await session.get(CreditAccountRecord, 'user-1')
            assert record.balance == 13


class TestUnresolvedDebits:
    """Tests for abandoned debit detection."""

    @pytest.mark.asyncio
    async def test_only_pending_unrefunded_debits(self, reconciliation, ledger, fund):
        """Test linked and refunded debits are not reported."""
        await fund('user-1', 20)
        linked = await ledger.record_movement('user-1', -4, TransactionKind.CONSUMPTION, "Linked")
        await ledger.patch_related_entity(linked.id, 'agent-1')
        refunded = await ledger.record_movement('user-1', -4, TransactionKind.CONSUMPTION, "Refunded")
        await ledger.record_movement(
            'user-1', 4, TransactionKind.REFUND, "Refund: Refunded", reference_transaction_id=refunded.id
        )
        abandoned = await ledger.record_movement('user-1', -3, TransactionKind.CONSUMPTION, "Abandoned")

        unresolved = await reconciliation.detect_unresolved_debits(older_than_minutes=0)

        assert [u['transaction_id'] for u in unresolved] == [abandoned.id]
        assert unresolved[0]['amount'] == -3

    @pytest.mark.asyncio
    async def test_recent_debits_ignored(self, reconciliation, ledger, fund):
        """Test debits younger than the threshold may still be in flight."""
        await fund('user-1', 10)
        await ledger.record_movement('user-1', -3, TransactionKind.CONSUMPTION, "In flight")

        assert await reconciliation.detect_unresolved_debits(older_than_minutes=60) == []

    @pytest.mark.asyncio
    async def test_full_reconciliation(self, reconciliation, ledger, fund):
        """Test the combined report is healthy for a clean ledger."""
        await fund('user-1', 10)

        report = await reconciliation.run_full_reconciliation(older_than_minutes=0)

        assert report['healthy'] is True
        assert report['balances']['checked'] == 1
        assert report['unresolved_debits'] == []
