"""Tests for the debit/refund orchestrator.

Tests cover:
- Successful debit and commit with related entity back-fill
- Insufficient credits before any write
- Refund when the guarded action fails, raises or returns nothing
- Refund failure escalation
- Retries of transient ledger errors
- Concurrent actions on one account
- Cancellation of the caller
- State machine transitions
"""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, patch

from backend.src.billing.domain.transaction import (
    ActionOutcome,
    PricedAction,
    PricedActionState,
    TransactionKind,
)
from backend.src.billing.shared.exceptions import (
    AccountLookupFailedError,
    DebitFailedError,
    GuardedActionFailedError,
    InsufficientCreditsError,
    InvalidActionParametersError,
    InvalidStateTransitionError,
    LedgerWriteFailedError,
    RefundFailedError,
)

VOICE_15 = {'duration': 15}  # costs 4


class TestSuccessfulAction:
    """Tests for the commit path."""

    @pytest.mark.asyncio
    async def test_debit_and_commit(self, orchestrator, ledger, fund):
        """Test balance 10 and cost 4 leaves 6 with one CONSUMPTION entry."""
        await fund('user-1', 10)

        result = await orchestrator.execute(
            'user-1', 'voice_agent', VOICE_15, AsyncMock(return_value=ActionOutcome.succeeded('agent-1'))
        )
        await orchestrator.drain()

        assert result.resource_id == 'agent-1'
        assert result.cost == 4
        assert result.remaining_balance == 6
        assert await ledger.get_balance('user-1') == 6

        consumptions = await ledger.list_transactions('user-1', kind='consumption')
        assert len(consumptions) == 1
        assert consumptions[0].amount == -4
        assert consumptions[0].id == result.transaction_id
        assert consumptions[0].related_entity_id == 'agent-1'

    @pytest.mark.asyncio
    async def test_plain_return_value_is_success(self, orchestrator, ledger, fund):
        """Test a guarded action may return the bare resource id."""
        await fund('user-1', 20)

        result = await orchestrator.execute(
            'user-1', 'course', {'chapters': 3, 'lessons_per_chapter': 4}, AsyncMock(return_value='course-7')
        )

        assert result.resource_id == 'course-7'
        assert result.remaining_balance == 5

    @pytest.mark.asyncio
    async def test_default_description(self, orchestrator, ledger, fund):
        """Test the ledger description names the action and its parameters."""
        await fund('user-1', 10)

        result = await orchestrator.execute('user-1', 'presentation', {'slides': 12}, AsyncMock(return_value='deck-1'))

        tx = await ledger.get_transaction(result.transaction_id)
        assert tx.description == "Presentation creation (slides=12)"

    @pytest.mark.asyncio
    async def test_debit_happens_before_action(self, orchestrator, ledger, fund):
        """Test the guarded action already sees the debited balance."""
        await fund('user-1', 10)
        seen = {}

        async def create_agent():
            seen['balance'] = await ledger.get_balance('user-1')
            return ActionOutcome.succeeded('agent-1')

        await orchestrator.execute('user-1', 'voice_agent', VOICE_15, create_agent)

        assert seen['balance'] == 6


class TestRejectedBeforeDebit:
    """Tests for actions that never reach the ledger."""

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, orchestrator, ledger, fund):
        """Test balance 2 and cost 4 fails with nothing written."""
        await fund('user-1', 2)
        action = AsyncMock(return_value='agent-1')

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, action)

        assert exc_info.value.required == 4
        assert exc_info.value.available == 2
        action.assert_not_awaited()
        assert await ledger.get_balance('user-1') == 2
        assert await ledger.count_transactions('user-1') == 1

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, orchestrator, ledger):
        """Test invalid parameters fail before pricing."""
        action = AsyncMock(return_value='agent-1')

        with pytest.raises(InvalidActionParametersError):
            await orchestrator.execute('user-1', 'voice_agent', {'duration': 500}, action)

        action.assert_not_awaited()
        assert await ledger.count_transactions('user-1') == 0


class TestRefund:
    """Tests for the compensation path."""

    @pytest.mark.asyncio
    async def test_failed_outcome_is_refunded(self, orchestrator, ledger, fund):
        """Test a failed action restores the balance with a REFUND entry."""
        await fund('user-1', 10)
        failure = RuntimeError("TTS provider unavailable")

        with pytest.raises(GuardedActionFailedError) as exc_info:
            await orchestrator.execute(
                'user-1', 'voice_agent', VOICE_15, AsyncMock(return_value=ActionOutcome.failed(failure))
            )

        assert exc_info.value.refunded is True
        assert exc_info.value.__cause__ is failure
        assert await ledger.get_balance('user-1') == 10

        consumption = (await ledger.list_transactions('user-1', kind='consumption'))[0]
        refund = (await ledger.list_transactions('user-1', kind='refund'))[0]
        assert consumption.amount == -4
        assert refund.amount == 4
        assert refund.reference_transaction_id == consumption.id
        assert refund.id == exc_info.value.refund_transaction_id

    @pytest.mark.asyncio
    async def test_raised_exception_is_refunded(self, orchestrator, ledger, fund):
        """Test an exception from the action is treated as a failure."""
        await fund('user-1', 10)

        with pytest.raises(GuardedActionFailedError):
            await orchestrator.execute(
                'user-1', 'voice_agent', VOICE_15, AsyncMock(side_effect=ValueError("bad script"))
            )

        assert await ledger.get_balance('user-1') == 10
        assert await ledger.sum_transactions('user-1') == 10

    @pytest.mark.asyncio
    async def test_missing_resource_id_is_refunded(self, orchestrator, ledger, fund):
        """Test an action returning nothing counts as failed."""
        await fund('user-1', 10)

        with pytest.raises(GuardedActionFailedError):
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(return_value=None))

        assert await ledger.get_balance('user-1') == 10

    @pytest.mark.asyncio
    async def test_debit_then_refund_is_balance_neutral(self, orchestrator, ledger, fund):
        """Test exactly two new entries that sum to zero."""
        await fund('user-1', 10)
        before = await ledger.count_transactions('user-1')

        with pytest.raises(GuardedActionFailedError):
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(side_effect=RuntimeError()))

        entries = await ledger.list_transactions('user-1')
        new_entries = entries[:len(entries) - before]
        assert len(new_entries) == 2
        assert sum(t.amount for t in new_entries) == 0

    @pytest.mark.asyncio
    async def test_refund_failure_escalates(self, orchestrator, ledger, fund, caplog):
        """Test a refund that cannot be written raises RefundFailedError and logs CRITICAL."""
        await fund('user-1', 10)
        original = ledger.record_movement

        async def refuse_refunds(account_id, delta, kind, description, **kwargs):
            if kind == TransactionKind.REFUND:
                raise LedgerWriteFailedError(account_id=account_id, cause="disk full")
            return await original(account_id, delta, kind, description, **kwargs)

        with caplog.at_level(logging.CRITICAL):
            with patch.object(ledger, 'record_movement', side_effect=refuse_refunds):
                with pytest.raises(RefundFailedError) as exc_info:
                    await orchestrator.execute(
                        'user-1', 'voice_agent', VOICE_15, AsyncMock(side_effect=RuntimeError("boom"))
                    )

        assert exc_info.value.account_id == 'user-1'
        assert exc_info.value.cost == 4
        assert 'may not have been restored' in exc_info.value.message
        assert await ledger.get_balance('user-1') == 6
        assert any(r.levelno == logging.CRITICAL and 'REFUND FAILED' in r.getMessage() for r in caplog.records)


class TestTransientErrors:
    """Tests for retries around the ledger."""

    @pytest.mark.asyncio
    async def test_debit_retried_then_succeeds(self, orchestrator, ledger, fund):
        """Test one transient failure is retried transparently."""
        await fund('user-1', 10)
        original = ledger.record_movement
        calls = {'count': 0}

        async def flaky(account_id, delta, kind, description, **kwargs):
            calls['count'] += 1
            if calls['count'] == 1:
                raise LedgerWriteFailedError(account_id=account_id, cause="connection reset")
            return await original(account_id, delta, kind, description, **kwargs)

        with patch.object(ledger, 'record_movement', side_effect=flaky):
            result = await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(return_value='agent-1'))

        assert result.remaining_balance == 6
        assert calls['count'] == 2
        assert len(await ledger.list_transactions('user-1', kind='consumption')) == 1

    @pytest.mark.asyncio
    async def test_debit_gives_up_after_max_attempts(self, orchestrator, ledger, fund):
        """Test persistent write failures end in DebitFailedError with nothing charged."""
        await fund('user-1', 10)
        action = AsyncMock(return_value='agent-1')
        failing = AsyncMock(side_effect=LedgerWriteFailedError(account_id='user-1', cause="down"))

        with patch.object(ledger, 'record_movement', failing):
            with pytest.raises(DebitFailedError) as exc_info:
                await orchestrator.execute('user-1', 'voice_agent', VOICE_15, action)

        assert exc_info.value.attempts == 3
        assert failing.await_count == 3
        action.assert_not_awaited()
        assert await ledger.get_balance('user-1') == 10

    @pytest.mark.asyncio
    async def test_balance_read_failure(self, orchestrator, ledger):
        """Test an unreadable balance ends in DebitFailedError."""
        failing = AsyncMock(side_effect=AccountLookupFailedError(account_id='user-1'))

        with patch.object(ledger, 'get_balance', failing):
            with pytest.raises(DebitFailedError):
                await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(return_value='agent-1'))


class TestConcurrency:
    """Tests for concurrent actions on one account."""

    @pytest.mark.asyncio
    async def test_concurrent_actions_floor_of_balance_over_cost(self, orchestrator, ledger, fund):
        """Test with balance 10 and cost 4 exactly two of five actions run."""
        await fund('user-1', 10)
        action = AsyncMock(return_value='agent-1')

        results = await asyncio.gather(
            *[orchestrator.execute('user-1', 'voice_agent', VOICE_15, action) for _ in range(5)],
            return_exceptions=True,
        )
        await orchestrator.drain()

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 2
        assert all(isinstance(e, InsufficientCreditsError) for e in failed)
        assert action.await_count == 2
        assert await ledger.get_balance('user-1') == 2
        assert await ledger.sum_transactions('user-1') == 2


class TestCancellation:
    """Tests for callers that go away mid-action."""

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_commits(self, orchestrator, ledger, fund):
        """Test the action resolves after its caller was cancelled."""
        await fund('user-1', 10)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_course():
            started.set()
            await release.wait()
            return ActionOutcome.succeeded('course-9')

        caller = asyncio.ensure_future(
            orchestrator.execute('user-1', 'course', {'chapters': 1, 'lessons_per_chapter': 2}, slow_course)
        )
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert orchestrator.pending >= 1
        release.set()
        await orchestrator.drain()

        assert orchestrator.pending == 0
        assert await ledger.get_balance('user-1') == 7
        consumption = (await ledger.list_transactions('user-1', kind='consumption'))[0]
        assert consumption.related_entity_id == 'course-9'

    @pytest.mark.asyncio
    async def test_cancelled_action_is_refunded(self, orchestrator, ledger, fund):
        """Test an action that is itself cancelled gets its credits back."""
        await fund('user-1', 10)

        async def cancelled_action():
            raise asyncio.CancelledError()

        with pytest.raises(GuardedActionFailedError):
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, cancelled_action)

        assert await ledger.get_balance('user-1') == 10


class TestStateMachine:
    """Tests for priced action state transitions."""

    @pytest.mark.asyncio
    async def test_listener_sees_commit_path(self, orchestrator, fund):
        """Test the committed path visits every state in order."""
        await fund('user-1', 10)
        finished = []
        orchestrator.add_listener(finished.append)

        await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(return_value='agent-1'))

        assert len(finished) == 1
        assert finished[0].history == [
            PricedActionState.INITIATED,
            PricedActionState.PRICED,
            PricedActionState.DEBITED,
            PricedActionState.COMMITTED,
        ]

    @pytest.mark.asyncio
    async def test_listener_sees_refund_path(self, orchestrator, fund):
        """Test the refunded path ends in REFUNDED."""
        await fund('user-1', 10)
        finished = []
        orchestrator.add_listener(finished.append)

        with pytest.raises(GuardedActionFailedError):
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(side_effect=RuntimeError()))

        assert finished[0].history[-3:] == [
            PricedActionState.DEBITED,
            PricedActionState.REFUNDING,
            PricedActionState.REFUNDED,
        ]
        assert finished[0].refund_transaction_id is not None

    @pytest.mark.asyncio
    async def test_listener_sees_debit_failure(self, orchestrator, fund):
        """Test an unaffordable action ends in DEBIT_FAILED."""
        await fund('user-1', 1)
        finished = []
        orchestrator.add_listener(finished.append)

        with pytest.raises(InsufficientCreditsError):
            await orchestrator.execute('user-1', 'voice_agent', VOICE_15, AsyncMock(return_value='agent-1'))

        assert finished[0].state == PricedActionState.DEBIT_FAILED

    def test_illegal_transition_rejected(self):
        """Test skipping the debit is not allowed."""
        action = PricedAction(account_id='user-1', kind='voice_agent', parameters=VOICE_15)
        action.transition(PricedActionState.PRICED)

        with pytest.raises(InvalidStateTransitionError):
            action.transition(PricedActionState.COMMITTED)

    def test_terminal_states_have_no_exits(self):
        """Test terminal states cannot be left."""
        action = PricedAction(account_id='user-1', kind='voice_agent', parameters=VOICE_15)
        for state in (PricedActionState.PRICED, PricedActionState.DEBIT_FAILED):
            action.transition(state)

        assert action.state.is_terminal
        with pytest.raises(InvalidStateTransitionError):
            action.transition(PricedActionState.DEBITED)
