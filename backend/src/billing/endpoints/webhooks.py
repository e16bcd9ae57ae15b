"""
Webhook Endpoints

Stripe webhook endpoint for processing billing events.
"""

import logging
from fastapi import APIRouter, Depends, Request

from backend.src.billing.credits.integration import BillingIntegration
from backend.src.billing.external.stripe import webhook_service
from .dependencies import get_billing_integration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["billing-webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    integration: BillingIntegration = Depends(get_billing_integration)
):
    """
    Process Stripe webhook events.

    Handles:
    - checkout.session.completed (credit purchases)
    """
    return await webhook_service.process_stripe_webhook(request, integration)
