"""
Reconciliation Service

Periodic consistency checks over the credit ledger.
Features:
- Verify every balance equals the sum of its ledger entries
- Detect debits that were never linked to a resource nor refunded

Discrepancies are reported and logged, never corrected automatically.
Corrections go through admin adjustments so they leave their own audit
entries.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from backend.core.conf import settings
from backend.src.billing.domain.tables import CreditAccountRecord, CreditTransactionRecord
from backend.src.billing.domain.transaction import TransactionKind
from backend.src.billing.shared.exceptions import ReconciliationError

logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Handles credit ledger reconciliation.

    Should be run periodically (e.g., hourly via cron or ``credit-core reconcile``)
    to catch any discrepancies.

    Usage:
        from backend.src.billing.payments import reconciliation_service

        # Run everything
        results = await reconciliation_service.run_full_reconciliation()

        # Verify balances only
        balance_check = await reconciliation_service.verify_ledger_consistency()
    """

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            return async_db_session
        return self._session_factory

    async def verify_ledger_consistency(self) -> Dict:
        """
        Verify credit account balances are consistent.

        Checks: balance == SUM(ledger amounts) for every account

        Returns:
            Dict with checked count and discrepancies
        """
        results = {
            'checked': 0,
            'discrepancies_found': []
        }

        ledger_totals = (
            select(
                CreditTransactionRecord.account_id.label('account_id'),
                func.sum(CreditTransactionRecord.amount).label('total'),
            )
            .group_by(CreditTransactionRecord.account_id)
            .subquery()
        )
        stmt = (
            select(
                CreditAccountRecord.account_id,
                CreditAccountRecord.balance,
                func.coalesce(ledger_totals.c.total, 0),
            )
            .outerjoin(ledger_totals, ledger_totals.c.account_id == CreditAccountRecord.account_id)
            .order_by(CreditAccountRecord.account_id)
        )

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[RECONCILIATION] Could not read balances: {e}")
            raise ReconciliationError("Could not read balances", cause=str(e)) from e

        for account_id, balance, ledger_total in rows:
            results['checked'] += 1
            ledger_total = int(ledger_total)
            if balance != ledger_total:
                logger.warning(
                    f"[RECONCILIATION] Balance mismatch for {account_id}: "
                    f"balance={balance}, ledger={ledger_total}"
                )
                results['discrepancies_found'].append({
                    'account_id': account_id,
                    'balance': balance,
                    'ledger_total': ledger_total,
                    'difference': balance - ledger_total,
                })

        logger.info(
            f"[RECONCILIATION] Balance check complete: checked={results['checked']}, "
            f"discrepancies={len(results['discrepancies_found'])}"
        )
        return results

    async def detect_unresolved_debits(self, older_than_minutes: Optional[int] = None) -> List[Dict]:
        """
        Find consumptions that never got a resource id and were never refunded.

        A debit in this state means the process stopped between the debit
        and its resolution.

        Args:
            older_than_minutes: Ignore debits younger than this; defaults to
                CREDIT_UNRESOLVED_DEBIT_MINUTES

        Returns:
            List of dicts with transaction_id, account_id, amount, description, created_at
        """
        minutes = settings.CREDIT_UNRESOLVED_DEBIT_MINUTES if older_than_minutes is None else older_than_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)

        refund = aliased(CreditTransactionRecord)
        refunded = select(refund.id).where(
            and_(
                refund.reference_transaction_id == CreditTransactionRecord.id,
                refund.kind == TransactionKind.REFUND.value,
            )
        )
        stmt = (
            select(CreditTransactionRecord)
            .where(
                CreditTransactionRecord.kind == TransactionKind.CONSUMPTION.value,
                CreditTransactionRecord.related_entity_id.is_(None),
                CreditTransactionRecord.created_at < cutoff,
                ~refunded.exists(),
            )
            .order_by(CreditTransactionRecord.created_at)
        )

        try:
            async with self.session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[RECONCILIATION] Could not read ledger: {e}")
            raise ReconciliationError("Could not read ledger", cause=str(e)) from e

        unresolved = []
        for record in records:
            logger.warning(
                f"[RECONCILIATION] Unresolved debit {record.id} for {record.account_id}: "
                f"{record.amount} ({record.description})"
            )
            unresolved.append({
                'transaction_id': record.id,
                'account_id': record.account_id,
                'amount': record.amount,
                'description': record.description,
                'created_at': record.created_at.isoformat() if record.created_at else None,
            })
        return unresolved

    async def run_full_reconciliation(self, older_than_minutes: Optional[int] = None) -> Dict:
        """Run every check and return their combined report."""
        logger.info("[RECONCILIATION] Starting full reconciliation")

        balances = await self.verify_ledger_consistency()
        unresolved = await self.detect_unresolved_debits(older_than_minutes)

        results = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'balances': balances,
            'unresolved_debits': unresolved,
            'healthy': not balances['discrepancies_found'] and not unresolved,
        }
        logger.info(
            f"[RECONCILIATION] Complete: healthy={results['healthy']}, "
            f"unresolved_debits={len(unresolved)}"
        )
        return results


# Global reconciliation instance
reconciliation_service = ReconciliationService()
