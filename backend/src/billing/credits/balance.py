"""
Balance Query Service

Read-only access to balances and transaction history for the UI and
reporting consumers. The only write it can cause is the implicit
creation of an account on its first balance read.
"""

import csv
import io
import logging
from typing import List, Optional

from backend.core.conf import settings
from backend.src.billing.credits.ledger import LedgerStore, ledger_store
from backend.src.billing.domain.transaction import TransactionPage, TransactionView
from backend.src.billing.shared.cache_utils import cache_balance, get_cached_balance
from backend.src.billing.shared.exceptions import InvalidActionParametersError

logger = logging.getLogger(__name__)

CSV_HEADER = ['Date', 'Type', 'Description', 'Amount', 'Related ID']


class BalanceQueryService:
    """
    Balance and history lookups.

    With ``CREDIT_BALANCE_CACHE_ENABLED`` balances are read through Redis.
    The ledger store refreshes the cached value of an account on every
    write, so cached reads never lag behind a completed write.
    """

    def __init__(self, ledger: Optional[LedgerStore] = None, cache_enabled: Optional[bool] = None):
        self.ledger = ledger or ledger_store
        self.cache_enabled = settings.CREDIT_BALANCE_CACHE_ENABLED if cache_enabled is None else cache_enabled

    async def get_balance(self, account_id: str) -> int:
        if self.cache_enabled:
            cached = await get_cached_balance(account_id)
            if cached is not None:
                return cached

        account = await self.ledger.get_account(account_id)
        if self.cache_enabled:
            await cache_balance(account_id, account.balance, account.version)
        return account.balance

    async def list_recent_transactions(self, account_id: str, limit: int = 10) -> List[TransactionView]:
        """Most recent ledger entries, newest first."""
        if limit < 1:
            raise InvalidActionParametersError(message="limit must be at least 1", errors=["limit must be at least 1"])
        limit = min(limit, settings.CREDIT_HISTORY_MAX_PAGE_SIZE)
        transactions = await self.ledger.list_transactions(account_id, limit=limit)
        return [TransactionView.from_transaction(tx) for tx in transactions]

    async def get_transaction_page(
        self,
        account_id: str,
        page: int = 1,
        per_page: Optional[int] = None,
        kind: Optional[str] = None,
        search: Optional[str] = None
    ) -> TransactionPage:
        """
        One page of the filtered transaction history.

        Args:
            account_id: Account to list
            page: 1-based page number
            per_page: Page size, capped at CREDIT_HISTORY_MAX_PAGE_SIZE
            kind: Only entries of this kind (purchase, consumption, ...)
            search: Case-insensitive substring of the description
        """
        per_page = min(per_page or settings.CREDIT_HISTORY_DEFAULT_PAGE_SIZE, settings.CREDIT_HISTORY_MAX_PAGE_SIZE)
        page = max(1, page)

        total = await self.ledger.count_transactions(account_id, kind=kind, search=search)
        transactions = await self.ledger.list_transactions(
            account_id, limit=per_page, offset=(page - 1) * per_page, kind=kind, search=search
        )
        return TransactionPage(
            transactions=[TransactionView.from_transaction(tx) for tx in transactions],
            total=total,
            page=page,
            per_page=per_page,
        )

    async def export_transactions_csv(
        self,
        account_id: str,
        kind: Optional[str] = None,
        search: Optional[str] = None
    ) -> str:
        """Full filtered history as CSV (Date, Type, Description, Amount, Related ID)."""
        transactions = await self.ledger.list_transactions(account_id, limit=None, kind=kind, search=search)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADER)
        for tx in transactions:
            writer.writerow([
                tx.created_at.strftime('%Y-%m-%d %H:%M:%S') if tx.created_at else '',
                tx.kind.label,
                tx.description,
                tx.amount,
                tx.related_entity_id or '',
            ])
        logger.debug(f"[CREDITS] Exported {len(transactions)} transactions for {account_id}")
        return buffer.getvalue()


# Global balance query instance
balance_query_service = BalanceQueryService()
