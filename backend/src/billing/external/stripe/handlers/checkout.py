"""
Checkout Session Webhook Handler

Handles checkout.session.completed events for credit purchases.
"""

import logging
from typing import Any, Dict, Optional

from backend.src.billing.shared.exceptions import WebhookError

logger = logging.getLogger(__name__)


class CheckoutHandler:
    """
    Handler for Stripe Checkout session webhook events.

    Handles:
    - checkout.session.completed with checkout_type=credit_purchase
    """

    @classmethod
    async def handle_checkout_completed(cls, event, integration) -> Optional[Dict[str, Any]]:
        """
        Handle checkout.session.completed event.

        Args:
            event: Stripe event object
            integration: BillingIntegration used to credit the purchase

        Returns:
            Result of the purchase crediting, or None when the session is
            not a credit purchase
        """
        session = event.data.object

        mode = session.get('mode')
        metadata = session.get('metadata') or {}
        session_id = session.get('id')

        logger.info(f"[CHECKOUT] Processing completed checkout: mode={mode}, session_id={session_id}")

        checkout_type = metadata.get('checkout_type', 'credit_purchase')
        if mode != 'payment' or checkout_type != 'credit_purchase':
            logger.info(f"[CHECKOUT] Unhandled checkout: mode={mode}, type={checkout_type}")
            return {'handled': False}

        if session.get('payment_status') not in (None, 'paid'):
            logger.info(f"[CHECKOUT] Session {session_id} not paid yet ({session.get('payment_status')})")
            return {'handled': False}

        return await cls._process_credit_purchase(event, session, metadata, integration)

    @classmethod
    async def _process_credit_purchase(cls, event, session, metadata: Dict, integration) -> Dict[str, Any]:
        account_id = metadata.get('account_id') or metadata.get('user_id')
        raw_amount = metadata.get('credit_amount')

        if not account_id:
            raise WebhookError("No account_id in credit purchase metadata", event_id=event.id, event_type=event.type)

        try:
            credits = int(raw_amount)
        except (TypeError, ValueError):
            raise WebhookError(
                f"Invalid credit_amount {raw_amount!r} in checkout metadata",
                event_id=event.id,
                event_type=event.type,
            )
        if credits <= 0:
            raise WebhookError("credit_amount must be positive", event_id=event.id, event_type=event.type)

        amount_total = session.get('amount_total') or 0
        result = await integration.record_purchase(
            account_id,
            credits,
            idempotency_key=f"stripe:{session.get('id') or event.id}",
            description=f"Credit purchase: {credits} credits (${amount_total / 100:.2f})",
        )
        logger.info(
            f"[CHECKOUT] Credit purchase for {account_id}: {credits} credits, duplicate={result['duplicate']}"
        )
        return {'handled': True, **result}
