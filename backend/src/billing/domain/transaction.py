"""
Credit Transaction Domain Entities

Ledger entries, the per-invocation priced action state machine and the
tagged outcome returned by a guarded action.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.src.billing.shared.exceptions import InvalidStateTransitionError


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass
class CreditTransaction:
    """
    One append-only ledger entry.

    ``amount`` and ``kind`` never change after the entry is written. The
    only field that may be filled in later is ``related_entity_id``, which
    is NULL while the paid-for resource does not exist yet.
    """
    id: str
    account_id: str
    kind: TransactionKind
    amount: int
    balance_after: int
    description: str
    created_at: datetime
    related_entity_id: Optional[str] = None
    reference_transaction_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    status: str = "committed"
    account_version: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        """True while a consumption still waits for its resource id."""
        return self.kind == TransactionKind.CONSUMPTION and self.related_entity_id is None

    @classmethod
    def from_record(cls, record: Any) -> 'CreditTransaction':
        return cls(
            id=record.id,
            account_id=record.account_id,
            kind=TransactionKind(record.kind),
            amount=int(record.amount),
            balance_after=int(record.balance_after),
            description=record.description,
            created_at=record.created_at,
            related_entity_id=record.related_entity_id,
            reference_transaction_id=record.reference_transaction_id,
            idempotency_key=record.idempotency_key,
            status=record.status,
            account_version=record.account_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'type': self.kind.value,
            'amount': self.amount,
            'balance_after': self.balance_after,
            'description': self.description,
            'related_entity_id': self.related_entity_id,
            'reference_transaction_id': self.reference_transaction_id,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class TransactionView:
    """Read-only projection of a ledger entry for UI and reporting consumers."""
    id: str
    kind: str
    amount: int
    description: str
    related_entity_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_transaction(cls, tx: CreditTransaction) -> 'TransactionView':
        return cls(
            id=tx.id,
            kind=tx.kind.value,
            amount=tx.amount,
            description=tx.description,
            related_entity_id=tx.related_entity_id,
            created_at=tx.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.kind,
            'amount': self.amount,
            'description': self.description,
            'related_entity_id': self.related_entity_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class TransactionPage:
    transactions: List[TransactionView]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page if self.per_page else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactions': [t.to_dict() for t in self.transactions],
            'total': self.total,
            'page': self.page,
            'per_page': self.per_page,
            'total_pages': self.total_pages,
        }


# =============================================================================
# PRICED ACTION STATE MACHINE
# =============================================================================

class PricedActionState(str, Enum):
    INITIATED = "initiated"
    PRICED = "priced"
    DEBITED = "debited"
    COMMITTED = "committed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    DEBIT_FAILED = "debit_failed"
    REFUND_FAILED = "refund_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


ALLOWED_TRANSITIONS: Dict[PricedActionState, frozenset] = {
    PricedActionState.INITIATED: frozenset({PricedActionState.PRICED}),
    PricedActionState.PRICED: frozenset({PricedActionState.DEBITED, PricedActionState.DEBIT_FAILED}),
    PricedActionState.DEBITED: frozenset({PricedActionState.COMMITTED, PricedActionState.REFUNDING}),
    PricedActionState.REFUNDING: frozenset({PricedActionState.REFUNDED, PricedActionState.REFUND_FAILED}),
    PricedActionState.COMMITTED: frozenset(),
    PricedActionState.REFUNDED: frozenset(),
    PricedActionState.DEBIT_FAILED: frozenset(),
    PricedActionState.REFUND_FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


@dataclass
class PricedAction:
    """
    One price -> debit -> perform -> resolve cycle.

    Lives only for the duration of a single orchestrator execution.
    """
    account_id: str
    kind: str
    parameters: Dict[str, Any]
    description: Optional[str] = None
    cost: Optional[int] = None
    state: PricedActionState = PricedActionState.INITIATED
    transaction_id: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    resource_id: Optional[str] = None
    history: List[PricedActionState] = field(default_factory=lambda: [PricedActionState.INITIATED])

    def transition(self, target: PricedActionState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(self.state.value, target.value)
        self.state = target
        self.history.append(target)


# =============================================================================
# GUARDED ACTION OUTCOME
# =============================================================================

@dataclass(frozen=True)
class ActionOutcome:
    """
    Tagged result of a guarded action.

    Build with ``ActionOutcome.succeeded(resource_id)`` or
    ``ActionOutcome.failed(error)``.
    """
    resource_id: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def succeeded(cls, resource_id: str) -> 'ActionOutcome':
        return cls(resource_id=str(resource_id))

    @classmethod
    def failed(cls, error: BaseException) -> 'ActionOutcome':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None and self.resource_id is not None


@dataclass(frozen=True)
class PricedActionResult:
    resource_id: str
    remaining_balance: int
    cost: int
    transaction_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'remaining_balance': self.remaining_balance,
            'cost': self.cost,
            'transaction_id': self.transaction_id,
        }
