"""
Billing Module

Credit accounting for the content platform: every priced action is paid
in credits through an append-only ledger.

Submodules:
- shared: Pricing configuration, exceptions, cache utilities
- domain: Core entities (CreditAccount, CreditTransaction, PricedAction) and tables
- credits: Calculator, ledger store, debit/refund orchestrator, balance queries, integration
- payments: Ledger reconciliation
- external: Payment provider integrations (Stripe)
- endpoints: API routes

Usage:
    # Credit operations
    from backend.src.billing.credits import (
        billing_integration,
        execute_priced_action,
    )

    # Reconciliation
    from backend.src.billing.payments import reconciliation_service
"""

from .credits import (
    ActionOutcome,
    BillingIntegration,
    billing_integration,
    price_action,
    execute_priced_action,
    get_balance,
    list_recent_transactions,
    adjust_balance_admin,
)
from .payments import reconciliation_service

__all__ = [
    'ActionOutcome',
    'BillingIntegration',
    'billing_integration',
    'price_action',
    'execute_priced_action',
    'get_balance',
    'list_recent_transactions',
    'adjust_balance_admin',
    'reconciliation_service',
]
