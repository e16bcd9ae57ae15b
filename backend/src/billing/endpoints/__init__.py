"""
Billing Endpoints Module

API routes for credit operations.

Routers:
- credits: Balance, history and cost previews
- admin: Balance corrections and reconciliation
- webhooks: Stripe webhook processing

Usage:
    from backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .credits import router as credits_router
from .webhooks import router as webhooks_router
from .dependencies import get_billing_integration, get_current_user_id, require_admin

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(credits_router)
billing_router.include_router(admin_router)
billing_router.include_router(webhooks_router)

__all__ = [
    'billing_router',
    'credits_router',
    'admin_router',
    'webhooks_router',
    'get_billing_integration',
    'get_current_user_id',
    'require_admin',
]
