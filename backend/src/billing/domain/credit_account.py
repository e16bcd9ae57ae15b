"""
Credit Account Domain Entity

Represents a user's credit account with balance tracking.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class CreditAccount:
    """
    Represents a user's credit account.

    The balance is a whole number of credits and is never negative. It
    always equals the sum of the amounts of the account's ledger entries.

    Attributes:
        account_id: Opaque identity of the owning user
        balance: Current balance in credits
        version: Incremented on every balance change
        created_at: When the account was created
        updated_at: Last modification time
    """
    account_id: str
    balance: int
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def can_run_with_cost(self, cost: int) -> bool:
        """Check if there are enough credits for an operation."""
        return self.balance >= cost

    def shortfall(self, cost: int) -> int:
        return max(0, cost - self.balance)

    @classmethod
    def from_record(cls, record: Any) -> 'CreditAccount':
        """Create from a ``credit_accounts`` row or ORM object."""
        return cls(
            account_id=str(record.account_id),
            balance=int(record.balance),
            version=int(record.version or 0),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'account_id': self.account_id,
            'balance': self.balance,
            'version': self.version,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
