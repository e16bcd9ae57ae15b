"""
Stripe Integration Module

Webhook processing for credit purchases made through Stripe Checkout.

Usage:
    from backend.src.billing.external.stripe import webhook_service

    result = await webhook_service.process_stripe_webhook(request)
"""

from .webhooks import (
    WebhookService,
    webhook_service,
)

from .handlers import CheckoutHandler

__all__ = [
    'WebhookService',
    'webhook_service',
    'CheckoutHandler',
]
