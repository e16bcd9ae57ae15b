"""Tests for Stripe webhook processing.

Tests cover:
- Signature and configuration checks
- Credit purchase crediting from checkout.session.completed
- Replayed events
- Malformed metadata and transient ledger failures
"""

import pytest
import stripe
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi import HTTPException

from backend.core.conf import settings
from backend.src.billing.external.stripe.webhooks import WebhookService
from backend.src.billing.shared.exceptions import LedgerWriteFailedError


def make_checkout_event(session_id='cs_test_1', account_id='user-1', credit_amount='100', **overrides):
    session = {
        'id': session_id,
        'mode': 'payment',
        'payment_status': 'paid',
        'amount_total': 999,
        'metadata': {
            'checkout_type': 'credit_purchase',
            'account_id': account_id,
            'credit_amount': credit_amount,
        },
    }
    session.update(overrides)
    event = MagicMock()
    event.id = f'evt_{session_id}'
    event.type = 'checkout.session.completed'
    event.data.object = session
    return event


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, 'STRIPE_WEBHOOK_SECRET', 'whsec_test')


@pytest.fixture
def service(integration):
    return WebhookService(integration=integration)


class TestSignature:
    """Tests for request verification."""

    @pytest.mark.asyncio
    async def test_missing_signature_header(self, service):
        """Test requests without a signature are rejected."""
        with pytest.raises(HTTPException) as exc_info:
            await service.process_payload(b'{}', None)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_secret_not_configured(self, service, monkeypatch):
        """Test a missing webhook secret is a server error."""
        monkeypatch.setattr(settings, 'STRIPE_WEBHOOK_SECRET', '')

        with pytest.raises(HTTPException) as exc_info:
            await service.process_payload(b'{}', 't=1,v1=abc')

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_invalid_signature(self, service):
        """Test a bad signature is rejected."""
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
        with patch('stripe.Webhook.construct_event', side_effect=error):
            with pytest.raises(HTTPException) as exc_info:
                await service.process_payload(b'{}', 't=1,v1=abc')

        assert exc_info.value.status_code == 400


class TestCheckoutCompleted:
    """Tests for credit purchases."""

    @pytest.mark.asyncio
    async def test_purchase_credited(self, service, ledger):
        """Test a paid credit purchase adds the credits with a descriptive entry."""
        with patch('stripe.Webhook.construct_event', return_value=make_checkout_event()):
            result = await service.process_payload(b'{}', 't=1,v1=abc')

        assert result['status'] == 'success'
        assert result['handled'] is True
        assert result['new_balance'] == 100
        transactions = await ledger.list_transactions('user-1')
        assert transactions[0].description == "Credit purchase: 100 credits ($9.99)"
        assert transactions[0].idempotency_key == 'stripe:cs_test_1'

    @pytest.mark.asyncio
    async def test_replayed_event_credited_once(self, service, ledger):
        """Test Stripe retries of the same session add credits once."""
        with patch('stripe.Webhook.construct_event', return_value=make_checkout_event()):
            await service.process_payload(b'{}', 't=1,v1=abc')
            replay = await service.process_payload(b'{}', 't=1,v1=abc')

        assert replay['duplicate'] is True
        assert await ledger.get_balance('user-1') == 100

    @pytest.mark.asyncio
    async def test_unpaid_session_ignored(self, service, ledger):
        """Test sessions that are not paid yet add nothing."""
        event = make_checkout_event(payment_status='unpaid')
        with patch('stripe.Webhook.construct_event', return_value=event):
            result = await service.process_payload(b'{}', 't=1,v1=abc')

        assert result['handled'] is False
        assert await ledger.count_transactions('user-1') == 0

    @pytest.mark.asyncio
    async def test_malformed_metadata_ignored(self, service, ledger):
        """Test a non-numeric credit amount is reported, not retried."""
        event = make_checkout_event(credit_amount='lots')
        with patch('stripe.Webhook.construct_event', return_value=event):
            result = await service.process_payload(b'{}', 't=1,v1=abc')

        assert result['status'] == 'ignored'
        assert result['error'] == 'WEBHOOK_ERROR'
        assert await ledger.count_transactions('user-1') == 0

    @pytest.mark.asyncio
    async def test_ledger_unavailable_asks_for_retry(self, service, integration):
        """Test a transient ledger failure answers 503 so Stripe retries."""
        integration.record_purchase = AsyncMock(side_effect=LedgerWriteFailedError(account_id='user-1'))

        with patch('stripe.Webhook.construct_event', return_value=make_checkout_event()):
            with pytest.raises(HTTPException) as exc_info:
                await service.process_payload(b'{}', 't=1,v1=abc')

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_other_events_not_handled(self, service):
        """Test unrelated event types are acknowledged without effect."""
        event = MagicMock()
        event.id = 'evt_other'
        event.type = 'invoice.paid'
        with patch('stripe.Webhook.construct_event', return_value=event):
            result = await service.process_payload(b'{}', 't=1,v1=abc')

        assert result == {'status': 'success', 'event_id': 'evt_other', 'handled': False}
