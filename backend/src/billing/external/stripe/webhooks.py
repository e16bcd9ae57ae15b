"""
Stripe Webhook Service

Central dispatcher for Stripe webhook events.
Handles signature verification and routing to handlers. Replayed events
are harmless: purchases are credited with the checkout session id as the
ledger idempotency key.
"""

import logging
from typing import Any, Dict, Optional

import stripe

from fastapi import HTTPException, Request

from backend.core.conf import settings
from backend.src.billing.shared.exceptions import BillingError, TransientLedgerError, WebhookError

logger = logging.getLogger(__name__)


class WebhookService:
    """
    Central service for processing Stripe webhooks.

    Responsibilities:
    - Verify webhook signatures
    - Route events to appropriate handlers
    - Ask Stripe to retry when the ledger was temporarily unavailable

    Usage:
        webhook_service = WebhookService()
        result = await webhook_service.process_stripe_webhook(request)
    """

    def __init__(self, integration=None):
        stripe.api_key = settings.STRIPE_SECRET_KEY
        self._integration = integration

    @property
    def integration(self):
        if self._integration is None:
            from backend.src.billing.credits.integration import billing_integration
            return billing_integration
        return self._integration

    async def process_stripe_webhook(self, request: Request, integration=None) -> Dict[str, Any]:
        """
        Process an incoming Stripe webhook.

        Args:
            request: FastAPI Request object
            integration: BillingIntegration to credit purchases with

        Returns:
            Dict with processing status

        Raises:
            HTTPException: If signature invalid, secret not configured, or
                the ledger could not be written (Stripe retries)
        """
        payload = await request.body()
        sig_header = request.headers.get('stripe-signature')
        return await self.process_payload(payload, sig_header, integration)

    async def process_payload(
        self,
        payload: bytes,
        sig_header: Optional[str],
        integration=None
    ) -> Dict[str, Any]:
        if not sig_header:
            raise HTTPException(status_code=400, detail="Missing stripe-signature header")

        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
            raise HTTPException(status_code=500, detail="Webhook secret not configured")

        # Verify signature and construct event
        try:
            event = stripe.Webhook.construct_event(
                payload,
                sig_header,
                settings.STRIPE_WEBHOOK_SECRET,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid webhook signature")
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")

        logger.info(f"[WEBHOOK] Processing event type: {event.type} (ID: {event.id})")

        try:
            result = await self._route_event(event, integration or self.integration)
        except TransientLedgerError as e:
            logger.error(f"[WEBHOOK] Ledger unavailable for event {event.id}: {e.code}")
            raise HTTPException(status_code=503, detail="Temporarily unable to record event")
        except WebhookError as e:
            # Malformed metadata will not get better on retry
            logger.error(f"[WEBHOOK] Rejected event {event.id}: {e.message}")
            return {'status': 'ignored', 'event_id': event.id, 'error': e.code}
        except BillingError as e:
            logger.error(f"[WEBHOOK] Error processing event {event.id}: {e.code}", exc_info=True)
            return {'status': 'failed', 'event_id': event.id, 'error': e.code}

        return {'status': 'success', 'event_id': event.id, **(result or {})}

    async def _route_event(self, event, integration) -> Optional[Dict[str, Any]]:
        """
        Route event to the appropriate handler.

        Args:
            event: Stripe event object
            integration: BillingIntegration used by handlers
        """
        from .handlers.checkout import CheckoutHandler

        if event.type == 'checkout.session.completed':
            logger.info("[WEBHOOK] Handling checkout.session.completed")
            return await CheckoutHandler.handle_checkout_completed(event, integration)

        logger.debug(f"[WEBHOOK] Unhandled event type: {event.type}")
        return {'handled': False}


# Global webhook service instance
webhook_service = WebhookService()
