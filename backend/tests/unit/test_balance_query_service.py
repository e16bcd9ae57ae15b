"""Tests for balance and history queries.

Tests cover:
- Balance reads and implicit account creation
- Recent transactions
- Paged and filtered history
- CSV export
- Redis read-through when the balance cache is enabled
"""

import csv
import io

import pytest
from unittest.mock import AsyncMock, patch

from backend.src.billing.credits.balance import CSV_HEADER, BalanceQueryService
from backend.src.billing.domain.transaction import TransactionKind
from backend.src.billing.shared.exceptions import InvalidActionParametersError


class TestBalance:
    """Tests for balance reads."""

    @pytest.mark.asyncio
    async def test_unknown_account_reads_zero(self, balances, ledger):
        """Test a first read creates the account with no entries."""
        assert await balances.get_balance('user-new') == 0
        assert await ledger.count_transactions('user-new') == 0

    @pytest.mark.asyncio
    async def test_balance_after_movements(self, balances, fund, ledger):
        """Test the balance reflects committed movements."""
        await fund('user-1', 12)
        await ledger.record_movement('user-1', -5, TransactionKind.CONSUMPTION, "Course creation")

        assert await balances.get_balance('user-1') == 7


class TestRecentTransactions:
    """Tests for the recent transaction list."""

    @pytest.mark.asyncio
    async def test_newest_first_and_limited(self, balances, fund, ledger):
        """Test the list is newest first and honours the limit."""
        await fund('user-1', 30)
        for i in range(4):
            await ledger.record_movement('user-1', -(i + 1), TransactionKind.CONSUMPTION, f"Action {i}")

        views = await balances.list_recent_transactions('user-1', limit=3)

        assert [v.amount for v in views] == [-4, -3, -2]
        assert views[0].to_dict()['type'] == 'consumption'

    @pytest.mark.asyncio
    async def test_invalid_limit(self, balances):
        """Test a non-positive limit is rejected."""
        with pytest.raises(InvalidActionParametersError):
            await balances.list_recent_transactions('user-1', limit=0)


class TestTransactionPage:
    """Tests for paged history."""

    @pytest.mark.asyncio
    async def test_pagination(self, balances, fund, ledger):
        """Test pages split the history and report totals."""
        await fund('user-1', 100)
        for i in range(6):
            await ledger.record_movement('user-1', -1, TransactionKind.CONSUMPTION, f"Presentation {i}")

        first = await balances.get_transaction_page('user-1', page=1, per_page=3)
        last = await balances.get_transaction_page('user-1', page=3, per_page=3)

        assert first.total == 7
        assert first.total_pages == 3
        assert len(first.transactions) == 3
        assert len(last.transactions) == 1
        assert last.transactions[0].amount == 100

    @pytest.mark.asyncio
    async def test_filters(self, balances, fund, ledger):
        """Test kind and search filters apply to page and total."""
        await fund('user-1', 100)
        await ledger.record_movement('user-1', -4, TransactionKind.CONSUMPTION, "Voice agent creation (duration=15)")
        await ledger.record_movement('user-1', -15, TransactionKind.CONSUMPTION, "Course creation")

        by_kind = await balances.get_transaction_page('user-1', kind='adjustment')
        by_search = await balances.get_transaction_page('user-1', search='VOICE')

        assert by_kind.total == 1
        assert by_search.total == 1
        assert by_search.transactions[0].amount == -4

    @pytest.mark.asyncio
    async def test_page_size_capped(self, balances, fund):
        """Test per_page never exceeds the configured maximum."""
        await fund('user-1', 1)

        page = await balances.get_transaction_page('user-1', per_page=10_000)

        assert page.per_page == 100


class TestCsvExport:
    """Tests for the CSV export."""

    @pytest.mark.asyncio
    async def test_export_contains_all_filtered_rows(self, balances, fund, ledger):
        """Test the export has a header and one row per entry."""
        await fund('user-1', 10)
        tx = await ledger.record_movement('user-1', -4, TransactionKind.CONSUMPTION, "Voice agent, 15 min")
        await ledger.patch_related_entity(tx.id, 'agent-3')

        content = await balances.export_transactions_csv('user-1')
        rows = list(csv.reader(io.StringIO(content)))

        assert rows[0] == CSV_HEADER
        assert len(rows) == 3
        assert rows[1][1:] == ['Consumption', 'Voice agent, 15 min', '-4', 'agent-3']
        assert rows[2][1:] == ['Adjustment', 'Test funding', '10', '']


class TestBalanceCache:
    """Tests for the Redis read-through."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_database(self, ledger):
        """Test a cached balance is returned without reading the account."""
        service = BalanceQueryService(ledger=ledger, cache_enabled=True)

        with patch('backend.src.billing.credits.balance.get_cached_balance', AsyncMock(return_value=42)), \
                patch.object(ledger, 'get_account', AsyncMock()) as get_account:
            assert await service.get_balance('user-1') == 42

        get_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_miss_populates_cache(self, ledger, fund):
        """Test a miss reads the database and caches the versioned balance."""
        await fund('user-1', 9)
        service = BalanceQueryService(ledger=ledger, cache_enabled=True)

        with patch('backend.src.billing.credits.balance.get_cached_balance', AsyncMock(return_value=None)), \
                patch('backend.src.billing.credits.balance.cache_balance', AsyncMock()) as cache_balance:
            assert await service.get_balance('user-1') == 9

        cache_balance.assert_awaited_once_with('user-1', 9, 1)
