"""
Debit-Refund Orchestrator

Runs a priced action as a compensating transaction:

    price -> debit -> guarded action -> commit | refund

The debit is committed (and its lock released) before the guarded action
starts. If the action fails the cost is refunded with a REFUND entry that
references the consumption. A refund that cannot be written is the only
unrecoverable case and surfaces as ``RefundFailedError``.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from backend.core.conf import settings
from backend.src.billing.credits.calculator import CreditCalculator, credit_calculator
from backend.src.billing.credits.ledger import LedgerStore, ledger_store
from backend.src.billing.domain.transaction import (
    ActionOutcome,
    CreditTransaction,
    PricedAction,
    PricedActionResult,
    PricedActionState,
    TransactionKind,
)
from backend.src.billing.shared.exceptions import (
    DebitFailedError,
    GuardedActionFailedError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    RefundFailedError,
    TransientLedgerError,
)

logger = logging.getLogger(__name__)

GuardedAction = Callable[[], Awaitable[Any]]
ActionListener = Callable[[PricedAction], None]


def _to_outcome(value: Any) -> ActionOutcome:
    if isinstance(value, ActionOutcome):
        return value
    if value is None:
        return ActionOutcome.failed(ValueError("Guarded action returned no resource id"))
    return ActionOutcome.succeeded(value)


class DebitRefundOrchestrator:
    """
    Coordinates one debit/perform/resolve cycle per priced action.

    Everything after pricing (debit, guarded action, commit or refund)
    runs in its own task shielded from the caller, so a cancelled request
    still ends in COMMITTED or REFUNDED. ``drain()`` waits for every run
    and related-entity patch still in flight.

    Usage:
        orchestrator = DebitRefundOrchestrator()

        async def create_voice_agent():
            agent_id = await voice_agents.create(...)
            return ActionOutcome.succeeded(agent_id)

        result = await orchestrator.execute(
            account_id, 'voice_agent', {'duration': 15}, create_voice_agent
        )
    """

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        calculator: Optional[CreditCalculator] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None
    ):
        self.ledger = ledger or ledger_store
        self.calculator = calculator or credit_calculator
        self.max_attempts = max(1, max_attempts or settings.CREDIT_WRITE_MAX_ATTEMPTS)
        self.retry_backoff = settings.CREDIT_WRITE_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self._inflight: Set[asyncio.Future] = set()
        self._listeners: List[ActionListener] = []

    def add_listener(self, listener: ActionListener) -> None:
        """Register a callback invoked with every priced action that reaches a terminal state."""
        self._listeners.append(listener)

    @property
    def pending(self) -> int:
        return len(self._inflight)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(
        self,
        account_id: str,
        kind: str,
        parameters: Mapping[str, Any],
        guarded_action: GuardedAction,
        description: Optional[str] = None
    ) -> PricedActionResult:
        """
        Price, debit, run the guarded action and resolve the debit.

        Args:
            account_id: Paying account
            kind: Priced action kind
            parameters: Action parameters
            guarded_action: Zero-argument coroutine function returning an
                ``ActionOutcome`` (a plain resource id is accepted as success)
            description: Ledger description; derived from kind and
                parameters when omitted

        Returns:
            PricedActionResult with resource id, balance after the debit,
            cost and consumption transaction id

        Raises:
            InvalidActionParametersError: Parameters rejected, nothing written
            InsufficientCreditsError: Balance below cost, nothing written
            DebitFailedError: Debit could not be written, nothing written
            GuardedActionFailedError: Action failed, credits refunded
            RefundFailedError: Action failed and the refund could not be written
        """
        action = PricedAction(account_id=account_id, kind=kind, parameters=dict(parameters or {}))
        action.cost = self.calculator.price(kind, action.parameters)
        action.description = description or self._describe(kind, action.parameters)
        action.transition(PricedActionState.PRICED)

        run = asyncio.ensure_future(self._run(action, guarded_action))
        self._track(run)
        return await asyncio.shield(run)

    async def _run(self, action: PricedAction, guarded_action: GuardedAction) -> PricedActionResult:
        # Runs detached from the caller: once started it always ends in a terminal state
        consumption = await self._debit(action)
        return await self._settle(action, consumption, guarded_action)

    async def _debit(self, action: PricedAction) -> CreditTransaction:
        account_id, cost = action.account_id, action.cost

        try:
            balance = await self._with_retries(lambda: self.ledger.get_balance(account_id), "balance read", account_id)
            if balance < cost:
                self._finish(action, PricedActionState.DEBIT_FAILED)
                logger.info(f"[ORCHESTRATOR] {account_id} has {balance} credits, {action.kind} costs {cost}")
                raise InsufficientCreditsError(required=cost, available=balance)

            attempt_key = f"debit:{uuid.uuid4()}"
            consumption = await self._with_retries(
                lambda: self.ledger.record_movement(
                    account_id,
                    -cost,
                    TransactionKind.CONSUMPTION,
                    action.description,
                    idempotency_key=attempt_key,
                ),
                "debit",
                account_id,
            )
        except InsufficientBalanceError as e:
            # Lost the race against a concurrent debit
            self._finish(action, PricedActionState.DEBIT_FAILED)
            raise InsufficientCreditsError(required=cost, available=e.available) from e
        except TransientLedgerError as e:
            self._finish(action, PricedActionState.DEBIT_FAILED)
            logger.error(f"[ORCHESTRATOR] Debit of {cost} for {account_id} failed after retries: {e.code}")
            raise DebitFailedError(account_id, cost, attempts=self.max_attempts, cause=e.code) from e

        action.transaction_id = consumption.id
        action.transition(PricedActionState.DEBITED)
        logger.info(
            f"[ORCHESTRATOR] Debited {cost} from {account_id} for {action.kind} (tx {consumption.id})"
        )
        return consumption

    async def _settle(
        self,
        action: PricedAction,
        consumption: CreditTransaction,
        guarded_action: GuardedAction
    ) -> PricedActionResult:
        try:
            outcome = _to_outcome(await guarded_action())
        except asyncio.CancelledError as e:
            outcome = ActionOutcome.failed(e)
        except Exception as e:
            outcome = ActionOutcome.failed(e)

        if outcome.ok:
            action.resource_id = outcome.resource_id
            self._finish(action, PricedActionState.COMMITTED)
            self._schedule_patch(consumption.id, outcome.resource_id)
            logger.info(
                f"[ORCHESTRATOR] Committed {action.kind} {outcome.resource_id} for {action.account_id}"
            )
            return PricedActionResult(
                resource_id=outcome.resource_id,
                remaining_balance=consumption.balance_after,
                cost=action.cost,
                transaction_id=consumption.id,
            )

        refund = await self._refund(action, consumption, outcome.error)
        raise GuardedActionFailedError(
            action.account_id,
            action.cost,
            original_error=outcome.error,
            refunded=True,
            refund_transaction_id=refund.id,
        ) from outcome.error

    async def _refund(
        self,
        action: PricedAction,
        consumption: CreditTransaction,
        error: Optional[BaseException]
    ) -> CreditTransaction:
        account_id, cost = action.account_id, action.cost
        action.transition(PricedActionState.REFUNDING)
        logger.warning(
            f"[ORCHESTRATOR] {action.kind} failed for {account_id} ({error!r}), refunding {cost} credits"
        )

        try:
            refund = await self._with_retries(
                lambda: self.ledger.record_movement(
                    account_id,
                    cost,
                    TransactionKind.REFUND,
                    f"Refund: {action.description}",
                    reference_transaction_id=consumption.id,
                    idempotency_key=f"refund:{consumption.id}",
                ),
                "refund",
                account_id,
            )
        except Exception as e:
            self._finish(action, PricedActionState.REFUND_FAILED)
            logger.critical(
                f"[ORCHESTRATOR] REFUND FAILED account_id={account_id} cost={cost} "
                f"consumption_tx={consumption.id} original_error={error!r} refund_error={e!r}"
            )
            raise RefundFailedError(
                account_id,
                cost,
                consumption_transaction_id=consumption.id,
                original_error=error,
                cause=getattr(e, 'code', type(e).__name__),
            ) from e

        action.refund_transaction_id = refund.id
        self._finish(action, PricedActionState.REFUNDED)
        logger.info(f"[ORCHESTRATOR] Refunded {cost} to {account_id} (tx {refund.id})")
        return refund

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _with_retries(self, operation: Callable[[], Awaitable[Any]], label: str, account_id: str) -> Any:
        """Run a ledger operation, retrying transient errors with linear backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except TransientLedgerError as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.retry_backoff * attempt
                logger.warning(
                    f"[ORCHESTRATOR] {label} for {account_id} failed with {e.code}, "
                    f"attempt {attempt}/{self.max_attempts}, retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    def _finish(self, action: PricedAction, state: PricedActionState) -> None:
        action.transition(state)
        if not state.is_terminal:
            return
        for listener in self._listeners:
            try:
                listener(action)
            except Exception as e:
                logger.warning(f"[ORCHESTRATOR] Action listener failed: {e}")

    def _schedule_patch(self, transaction_id: str, resource_id: str) -> None:
        self._track(asyncio.ensure_future(self._patch(transaction_id, resource_id)))

    async def _patch(self, transaction_id: str, resource_id: str) -> None:
        linked = await self.ledger.patch_related_entity(transaction_id, resource_id)
        if not linked:
            logger.warning(f"[ORCHESTRATOR] tx {transaction_id} left without resource id {resource_id}")

    def _track(self, future: asyncio.Future) -> None:
        self._inflight.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        # Mark the outcome as retrieved when the caller is gone; failures are already logged
        if not future.cancelled():
            future.exception()

    @staticmethod
    def _describe(kind: str, parameters: Dict[str, Any]) -> str:
        details = ", ".join(f"{key}={value}" for key, value in sorted(parameters.items()))
        label = kind.replace('_', ' ').capitalize()
        return f"{label} creation ({details})" if details else f"{label} creation"

    async def drain(self) -> None:
        """Wait for every in-flight settlement and related-entity patch."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


# Global orchestrator instance
debit_refund_orchestrator = DebitRefundOrchestrator()
