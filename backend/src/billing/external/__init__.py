"""
External Integrations Module

Integration with external payment providers:
- Stripe (credit purchases via Checkout)

Usage:
    from backend.src.billing.external.stripe import webhook_service
"""

from .stripe import (
    WebhookService,
    webhook_service,
    CheckoutHandler,
)

__all__ = [
    'WebhookService',
    'webhook_service',
    'CheckoutHandler',
]
