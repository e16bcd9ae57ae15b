"""Domain entities for billing module."""

from .credit_account import CreditAccount
from .transaction import (
    ActionOutcome,
    CreditTransaction,
    PricedAction,
    PricedActionResult,
    PricedActionState,
    TransactionKind,
    TransactionPage,
    TransactionView,
)

__all__ = [
    'CreditAccount',
    'ActionOutcome',
    'CreditTransaction',
    'PricedAction',
    'PricedActionResult',
    'PricedActionState',
    'TransactionKind',
    'TransactionPage',
    'TransactionView',
]
