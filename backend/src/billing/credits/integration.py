"""
Billing Integration Service

High-level interface for credit operations from the application layer.
Provides:
- Cost previews for priced actions
- Execution of priced actions (debit, perform, commit or refund)
- Balance and recent transaction lookups
- Admin balance adjustments (single and bulk)
- Purchase crediting for the payment webhook

This is the main entry point for route handlers and other parts of the
application to interact with the credit ledger.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from backend.src.billing.shared.exceptions import (
    BillingError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    InvalidActionParametersError,
)
from backend.src.billing.domain.transaction import PricedActionResult, TransactionKind, TransactionView
from .balance import BalanceQueryService, balance_query_service
from .calculator import CreditCalculator, credit_calculator
from .ledger import LedgerStore, ledger_store
from .orchestrator import DebitRefundOrchestrator, GuardedAction, debit_refund_orchestrator

logger = logging.getLogger(__name__)


class BillingIntegration:
    """
    High-level billing integration for the application.

    This class provides the main interface for:
    1. Previewing the cost of a priced action
    2. Running a priced action against an account
    3. Reading balances and history
    4. Operator corrections and purchases

    Usage:
        # Preview
        cost = billing_integration.price_action('course', {'chapters': 3, 'lessons_per_chapter': 4})

        # Run
        async def create_course():
            course = await courses.create(...)
            return ActionOutcome.succeeded(course.id)

        result = await billing_integration.execute_priced_action(
            account_id=user_id,
            kind='course',
            params={'chapters': 3, 'lessons_per_chapter': 4},
            guarded_action=create_course
        )
    """

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        calculator: Optional[CreditCalculator] = None,
        orchestrator: Optional[DebitRefundOrchestrator] = None,
        balances: Optional[BalanceQueryService] = None
    ):
        # Defaults share the module singletons so every caller uses the same account locks
        self.ledger = ledger or ledger_store
        self.calculator = calculator or credit_calculator
        if orchestrator is None:
            orchestrator = (
                debit_refund_orchestrator if ledger is None and calculator is None
                else DebitRefundOrchestrator(self.ledger, self.calculator)
            )
        self.orchestrator = orchestrator
        self.balances = balances or (balance_query_service if ledger is None else BalanceQueryService(self.ledger))

    # =========================================================================
    # PRICED ACTIONS
    # =========================================================================

    def price_action(self, kind: str, params: Optional[Mapping[str, Any]]) -> int:
        """Cost of an action in credits. No side effects."""
        return self.calculator.price(kind, params)

    def preview_cost(self, kind: str, params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Cost of an action with its breakdown. No side effects."""
        cleaned = self.calculator.validate(kind, params)
        breakdown = self.calculator.breakdown(kind, cleaned)
        return {
            'kind': kind,
            'parameters': cleaned,
            'credit_cost': breakdown['total'],
            'breakdown': breakdown,
        }

    async def execute_priced_action(
        self,
        account_id: str,
        kind: str,
        params: Optional[Mapping[str, Any]],
        guarded_action: GuardedAction,
        description: Optional[str] = None
    ) -> PricedActionResult:
        """
        Run a priced action against an account.

        Parameters are validated before anything else happens.

        Returns:
            PricedActionResult(resource_id, remaining_balance, cost, transaction_id)
        """
        cleaned = self.calculator.validate(kind, params)
        return await self.orchestrator.execute(account_id, kind, cleaned, guarded_action, description)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_balance(self, account_id: str) -> int:
        return await self.balances.get_balance(account_id)

    async def list_recent_transactions(self, account_id: str, limit: int = 10) -> List[TransactionView]:
        return await self.balances.list_recent_transactions(account_id, limit)

    # =========================================================================
    # ADMIN ADJUSTMENTS
    # =========================================================================

    async def adjust_balance_admin(self, account_id: str, delta: int, description: Optional[str] = None) -> int:
        """
        Operator correction of a balance.

        Writes an ADJUSTMENT entry through the same atomic balance+ledger
        step as every other movement.

        Returns:
            The new balance

        Raises:
            InvalidActionParametersError: delta is 0 or not an integer
            InsufficientCreditsError: A negative delta exceeds the balance
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidActionParametersError(
                message="Adjustment amount must be a non-zero whole number of credits",
                errors=["delta must be a non-zero integer"],
            )
        description = (description or "").strip() or f"Admin credit adjustment: {delta:+d} credits"

        try:
            tx = await self.ledger.record_movement(account_id, delta, TransactionKind.ADJUSTMENT, description)
        except InsufficientBalanceError as e:
            raise InsufficientCreditsError(
                message="Adjustment would make the balance negative",
                required=-delta,
                available=e.available,
            ) from e

        logger.info(f"[CREDITS] Admin adjustment {delta:+d} for {account_id}: {description}")
        return tx.balance_after

    async def bulk_adjust_balance_admin(
        self,
        account_ids: Iterable[str],
        delta: int,
        description: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Apply the same adjustment to several accounts.

        Each account is adjusted independently; one failure does not stop
        the others.

        Returns:
            One result dict per account: account_id, success and either
            new_balance or error
        """
        description = (description or "").strip() or f"Bulk credit adjustment: {delta:+d} credits"
        results = []
        for account_id in dict.fromkeys(account_ids):
            try:
                new_balance = await self.adjust_balance_admin(account_id, delta, description)
                results.append({'account_id': account_id, 'success': True, 'new_balance': new_balance})
            except BillingError as e:
                logger.warning(f"[CREDITS] Bulk adjustment failed for {account_id}: {e.code}")
                results.append({'account_id': account_id, 'success': False, 'error': e.code, 'message': e.message})

        succeeded = sum(1 for r in results if r['success'])
        logger.info(f"[CREDITS] Bulk adjustment {delta:+d}: {succeeded}/{len(results)} accounts updated")
        return results

    # =========================================================================
    # PURCHASES
    # =========================================================================

    async def record_purchase(
        self,
        account_id: str,
        credits: int,
        idempotency_key: str,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Credit a completed purchase.

        Args:
            account_id: Buyer
            credits: Number of credits bought
            idempotency_key: Payment event id; a repeated event is a no-op
            description: Audit description

        Returns:
            Dict with success, duplicate, transaction_id and new_balance
        """
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidActionParametersError(
                message="Purchased credits must be a positive whole number",
                errors=["credits must be a positive integer"],
            )

        tx, created = await self.ledger.write_movement(
            account_id,
            credits,
            TransactionKind.PURCHASE,
            description or f"Credit purchase: {credits} credits",
            idempotency_key=idempotency_key,
        )
        if not created:
            logger.info(f"[CREDITS] Purchase {idempotency_key} already credited (tx {tx.id})")
            return {
                'success': True,
                'duplicate': True,
                'transaction_id': tx.id,
                'new_balance': await self.ledger.get_balance(account_id),
            }

        logger.info(f"[CREDITS] ✅ Credited purchase of {credits} credits to {account_id}")
        return {
            'success': True,
            'duplicate': False,
            'transaction_id': tx.id,
            'new_balance': tx.balance_after,
        }


# Global instance
billing_integration = BillingIntegration()


# Convenience functions
def price_action(kind: str, params: Optional[Mapping[str, Any]]) -> int:
    """Cost preview using the global integration."""
    return billing_integration.price_action(kind, params)


async def execute_priced_action(
    account_id: str,
    kind: str,
    params: Optional[Mapping[str, Any]],
    guarded_action: GuardedAction,
    description: Optional[str] = None
) -> PricedActionResult:
    """Run a priced action using the global integration."""
    return await billing_integration.execute_priced_action(account_id, kind, params, guarded_action, description)


async def get_balance(account_id: str) -> int:
    """Get an account balance using the global integration."""
    return await billing_integration.get_balance(account_id)


async def list_recent_transactions(account_id: str, limit: int = 10) -> List[TransactionView]:
    """List recent transactions using the global integration."""
    return await billing_integration.list_recent_transactions(account_id, limit)


async def adjust_balance_admin(account_id: str, delta: int, description: Optional[str] = None) -> int:
    """Admin adjustment using the global integration."""
    return await billing_integration.adjust_balance_admin(account_id, delta, description)
