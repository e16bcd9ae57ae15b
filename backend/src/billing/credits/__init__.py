"""
Credits Module

Credit accounting core for priced AI-generation actions.

Components:
- CreditCalculator: Cost of a priced action
- LedgerStore: Balances and the append-only ledger
- DebitRefundOrchestrator: Debit, perform, commit or refund
- BalanceQueryService: Balance and history lookups
- BillingIntegration: High-level interface for application layer

Usage:
    from backend.src.billing.credits import (
        billing_integration,
        ActionOutcome,
    )

    # Preview
    cost = billing_integration.price_action('voice_agent', {'duration': 15})

    # Run
    result = await billing_integration.execute_priced_action(
        account_id, 'voice_agent', {'duration': 15}, create_voice_agent
    )
"""

from backend.src.billing.domain.transaction import (
    ActionOutcome,
    PricedActionResult,
    TransactionView,
)

from .calculator import (
    CreditCalculator,
    credit_calculator,
    calculate_action_cost,
    estimate_cost,
)

from .ledger import (
    LedgerStore,
    ledger_store,
)

from .orchestrator import (
    DebitRefundOrchestrator,
    debit_refund_orchestrator,
)

from .balance import (
    BalanceQueryService,
    balance_query_service,
)

from .integration import (
    BillingIntegration,
    billing_integration,
    price_action,
    execute_priced_action,
    get_balance,
    list_recent_transactions,
    adjust_balance_admin,
)

__all__ = [
    # Domain
    'ActionOutcome',
    'PricedActionResult',
    'TransactionView',
    # Calculator
    'CreditCalculator',
    'credit_calculator',
    'calculate_action_cost',
    'estimate_cost',
    # Ledger
    'LedgerStore',
    'ledger_store',
    # Orchestrator
    'DebitRefundOrchestrator',
    'debit_refund_orchestrator',
    # Balance queries
    'BalanceQueryService',
    'balance_query_service',
    # Integration
    'BillingIntegration',
    'billing_integration',
    'price_action',
    'execute_priced_action',
    'get_balance',
    'list_recent_transactions',
    'adjust_balance_admin',
]
