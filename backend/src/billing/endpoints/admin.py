"""
Admin Endpoints

Operator endpoints for balance corrections and ledger reconciliation.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, StrictInt

from backend.src.billing.credits.integration import BillingIntegration
from backend.src.billing.payments import reconciliation_service
from .dependencies import get_billing_integration, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/credits", tags=["admin-credits"])


# ============================================================================
# Request Models
# ============================================================================

class AdjustCreditsRequest(BaseModel):
    """Request for a single balance adjustment."""
    account_id: str = Field(..., min_length=1, max_length=64)
    delta: StrictInt = Field(..., description="Credits to add (positive) or remove (negative)")
    description: Optional[str] = Field(None, max_length=255)


class BulkAdjustCreditsRequest(BaseModel):
    """Request for the same adjustment over several accounts."""
    account_ids: List[str] = Field(..., min_length=1, max_length=1000)
    delta: StrictInt
    description: Optional[str] = Field(None, max_length=255)


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/adjust")
async def adjust_credits(
    request: AdjustCreditsRequest,
    admin_id: str = Depends(require_admin),
    integration: BillingIntegration = Depends(get_billing_integration)
) -> Dict:
    """Add or remove credits on one account."""
    logger.info(f"[ADMIN] {admin_id} adjusting {request.account_id} by {request.delta:+d}")
    new_balance = await integration.adjust_balance_admin(
        request.account_id, request.delta, request.description
    )
    return {'account_id': request.account_id, 'delta': request.delta, 'new_balance': new_balance}


@router.post("/bulk-adjust")
async def bulk_adjust_credits(
    request: BulkAdjustCreditsRequest,
    admin_id: str = Depends(require_admin),
    integration: BillingIntegration = Depends(get_billing_integration)
) -> Dict:
    """Apply the same adjustment to several accounts."""
    logger.info(f"[ADMIN] {admin_id} bulk adjusting {len(request.account_ids)} accounts by {request.delta:+d}")
    results = await integration.bulk_adjust_balance_admin(
        request.account_ids, request.delta, request.description
    )
    succeeded = sum(1 for r in results if r['success'])
    return {
        'results': results,
        'succeeded': succeeded,
        'failed': len(results) - succeeded,
    }


@router.get("/reconcile")
async def reconcile(
    older_than_minutes: Optional[int] = Query(None, ge=0),
    admin_id: str = Depends(require_admin)
) -> Dict:
    """Run the ledger consistency checks and report what they found."""
    logger.info(f"[ADMIN] {admin_id} requested reconciliation")
    return await reconciliation_service.run_full_reconciliation(older_than_minutes)
