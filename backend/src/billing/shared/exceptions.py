"""
Billing Exceptions

Custom exception classes for credit accounting errors.
These provide structured error handling across the billing module.

Every error carries a short ``reference_id`` so that a generic failure
shown to the user can be matched with the server log line that has the
full cause.
"""

import uuid


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.

    Attributes:
        user_actionable: True when the message can be shown to the end user
            as-is (they can fix it themselves, e.g. by topping up)
    """

    user_actionable: bool = False

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        self.reference_id = uuid.uuid4().hex[:12]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
            'reference_id': self.reference_id,
        }


class InvalidActionParametersError(BillingError):
    """
    Raised when a priced action's parameters fail validation.

    Rejected before pricing; the ledger is never touched.
    """

    user_actionable = True

    def __init__(self, message: str = "Invalid action parameters", errors: list = None, kind: str = None):
        details = {'errors': errors or []}
        if kind:
            details['kind'] = kind
        super().__init__(message=message, code="INVALID_ACTION_PARAMETERS", details=details)
        self.errors = errors or []
        self.kind = kind


class InsufficientCreditsError(BillingError):
    """
    Raised when a user doesn't have enough credits for an operation.

    Attributes:
        required: Credits required for the operation
        available: Credits currently available
    """

    user_actionable = True

    def __init__(
        self,
        message: str = "Insufficient credits for this operation",
        required: int = 0,
        available: int = 0
    ):
        super().__init__(
            message=message,
            code="INSUFFICIENT_CREDITS",
            details={
                'required': required,
                'available': available,
                'shortfall': max(0, required - available)
            }
        )
        self.required = required
        self.available = available


class InsufficientBalanceError(BillingError):
    """
    Raised by the ledger store when a conditional balance update matched no row.

    The orchestrator and admin paths translate it into
    ``InsufficientCreditsError`` before it reaches a caller.
    """

    def __init__(self, account_id: str, delta: int, available: int):
        super().__init__(
            message=f"Adjustment of {delta} would make the balance of {account_id} negative",
            code="INSUFFICIENT_BALANCE",
            details={'account_id': account_id, 'delta': delta, 'available': available}
        )
        self.account_id = account_id
        self.delta = delta
        self.available = available


# =============================================================================
# TRANSIENT INFRASTRUCTURE ERRORS
# =============================================================================

class TransientLedgerError(BillingError):
    """Base class for storage errors that are worth retrying."""

    def __init__(self, message: str, code: str, account_id: str = None, cause: str = None):
        details = {}
        if account_id:
            details['account_id'] = account_id
        if cause:
            details['cause'] = cause
        super().__init__(message=message, code=code, details=details)
        self.account_id = account_id


class AccountLookupFailedError(TransientLedgerError):
    """Raised when the balance of an account cannot be read."""

    def __init__(self, account_id: str = None, cause: str = None):
        super().__init__(
            message="Could not read the credit account",
            code="ACCOUNT_LOOKUP_FAILED",
            account_id=account_id,
            cause=cause
        )


class LedgerWriteFailedError(TransientLedgerError):
    """Raised when a balance change or ledger entry could not be persisted."""

    def __init__(self, account_id: str = None, cause: str = None):
        super().__init__(
            message="Could not write the credit ledger",
            code="LEDGER_WRITE_FAILED",
            account_id=account_id,
            cause=cause
        )


class ConcurrentModificationConflictError(TransientLedgerError):
    """Raised when the store reports a lock or serialization conflict."""

    def __init__(self, account_id: str = None, cause: str = None):
        super().__init__(
            message="The credit account was modified concurrently",
            code="CONCURRENT_MODIFICATION",
            account_id=account_id,
            cause=cause
        )


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================

class DebitFailedError(BillingError):
    """
    Raised when the debit could not be written after all retries.

    Terminal for the attempt and free of side effects; the caller may retry
    the whole action.
    """

    def __init__(self, account_id: str, cost: int, attempts: int, cause: str = None):
        super().__init__(
            message="Could not debit credits for this action. No credits were charged.",
            code="DEBIT_FAILED",
            details={'account_id': account_id, 'cost': cost, 'attempts': attempts, 'cause': cause}
        )
        self.account_id = account_id
        self.cost = cost
        self.attempts = attempts


class GuardedActionFailedError(BillingError):
    """
    Raised when the paid action failed after a successful debit.

    The original failure is chained as ``__cause__``; ``refunded`` tells
    the caller whether the credits were given back.
    """

    def __init__(
        self,
        account_id: str,
        cost: int,
        original_error: BaseException = None,
        refunded: bool = True,
        refund_transaction_id: str = None
    ):
        super().__init__(
            message="The action failed. Your credits have been refunded." if refunded
            else "The action failed.",
            code="GUARDED_ACTION_FAILED",
            details={
                'account_id': account_id,
                'cost': cost,
                'refunded': refunded,
                'refund_transaction_id': refund_transaction_id,
            }
        )
        self.account_id = account_id
        self.cost = cost
        self.original_error = original_error
        self.refunded = refunded
        self.refund_transaction_id = refund_transaction_id


class RefundFailedError(BillingError):
    """
    Raised when the compensating refund could not be written.

    This is the one condition the orchestrator cannot repair on its own; it
    is logged at CRITICAL and requires manual reconciliation.
    """

    def __init__(
        self,
        account_id: str,
        cost: int,
        consumption_transaction_id: str = None,
        original_error: BaseException = None,
        cause: str = None
    ):
        super().__init__(
            message=(
                "The action failed and the refund could not be recorded. "
                "Your credits may not have been restored; support has been notified."
            ),
            code="REFUND_FAILED",
            details={
                'account_id': account_id,
                'cost': cost,
                'consumption_transaction_id': consumption_transaction_id,
                'original_error': repr(original_error) if original_error else None,
                'cause': cause,
            }
        )
        self.account_id = account_id
        self.cost = cost
        self.consumption_transaction_id = consumption_transaction_id
        self.original_error = original_error


class InvalidStateTransitionError(BillingError):
    """Raised when a priced action is moved along an edge its state machine does not have."""

    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Illegal priced action transition {current} -> {target}",
            code="INVALID_STATE_TRANSITION",
            details={'from': current, 'to': target}
        )


# =============================================================================
# PAYMENT EVENTS
# =============================================================================

class WebhookError(BillingError):
    """
    Raised when there's an issue processing a webhook.

    Examples:
        - Invalid signature
        - Malformed purchase metadata
    """

    def __init__(
        self,
        message: str = "Webhook processing error",
        code: str = "WEBHOOK_ERROR",
        event_id: str = None,
        event_type: str = None
    ):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.event_id = event_id
        self.event_type = event_type


class ReconciliationError(BillingError):
    """Raised when the reconciliation pass cannot read the ledger."""

    def __init__(self, message: str = "Reconciliation error", cause: str = None):
        super().__init__(
            message=message,
            code="RECONCILIATION_ERROR",
            details={'cause': cause} if cause else {}
        )
