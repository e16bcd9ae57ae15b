"""
Payments Module

Ledger reconciliation.

Usage:
    from backend.src.billing.payments import reconciliation_service

    report = await reconciliation_service.run_full_reconciliation()
"""

from .reconciliation import ReconciliationService, reconciliation_service

__all__ = [
    'ReconciliationService',
    'reconciliation_service',
]
