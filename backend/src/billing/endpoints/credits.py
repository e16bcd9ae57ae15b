"""
Credit Endpoints

API endpoints for the caller's balance, transaction history and cost
previews.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from backend.src.billing.credits.integration import BillingIntegration
from backend.src.billing.shared.config import TRANSACTION_KINDS
from backend.src.billing.shared.exceptions import InvalidActionParametersError
from .dependencies import get_billing_integration, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

CSV_EXPORT_VALUES = ('csv', 'true')


@router.get("/balance")
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    integration: BillingIntegration = Depends(get_billing_integration)
) -> Dict:
    """Current credit balance of the caller."""
    balance = await integration.get_balance(user_id)
    return {'account_id': user_id, 'balance': balance}


@router.get("/transactions")
async def get_transactions(
    user_id: str = Depends(get_current_user_id),
    integration: BillingIntegration = Depends(get_billing_integration),
    page: int = Query(1, ge=1, description="1-based page number"),
    per_page: Optional[int] = Query(None, ge=1, description="Page size"),
    limit: Optional[int] = Query(None, ge=1, description="Alias of per_page"),
    type: Optional[str] = Query(None, description="Only entries of this type"),
    search: Optional[str] = Query(None, description="Substring of the description"),
    export: Optional[str] = Query(None, description="'csv' (or 'true') to download the filtered history")
):
    """
    Get credit transaction history.

    With ``export=csv`` the whole filtered history is returned as a CSV
    attachment instead of a page.
    """
    if type is not None and type not in TRANSACTION_KINDS:
        raise InvalidActionParametersError(
            message=f"Unknown transaction type: {type}",
            errors=[f"type must be one of {', '.join(TRANSACTION_KINDS)}"],
        )

    if export is not None:
        if export not in CSV_EXPORT_VALUES:
            raise InvalidActionParametersError(
                message=f"Unsupported export format: {export}",
                errors=["export must be 'csv' or 'true'"],
            )
        content = await integration.balances.export_transactions_csv(user_id, kind=type, search=search)
        filename = f"credit-history-{datetime.now(timezone.utc).strftime('%Y%m%d')}.csv"
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    result = await integration.balances.get_transaction_page(
        user_id, page=page, per_page=per_page or limit, kind=type, search=search
    )
    return result.to_dict()


@router.get("/cost")
async def get_cost(
    request: Request,
    kind: str = Query(..., description="Priced action kind"),
    user_id: str = Depends(get_current_user_id),
    integration: BillingIntegration = Depends(get_billing_integration)
) -> Dict:
    """
    Preview the cost of an action.

    Every query parameter other than ``kind`` is an action parameter,
    e.g. ``?kind=course&chapters=3&lessons_per_chapter=4``.
    """
    params = {}
    for name, value in request.query_params.items():
        if name == 'kind':
            continue
        try:
            params[name] = int(value)
        except ValueError:
            # Left as text so validation reports it
            params[name] = value

    preview = integration.preview_cost(kind, params)
    balance = await integration.get_balance(user_id)
    preview['balance'] = balance
    preview['can_afford'] = balance >= preview['credit_cost']
    return preview
