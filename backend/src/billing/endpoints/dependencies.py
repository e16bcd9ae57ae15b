"""
Endpoint Dependencies

Shared dependencies for billing API endpoints. Each of them can be
overridden in tests through ``app.dependency_overrides``.
"""

import logging
from typing import Any, Dict, Optional

import jwt

from fastapi import Depends, HTTPException, Header

from backend.core.conf import settings
from backend.src.billing.credits.integration import BillingIntegration, billing_integration

logger = logging.getLogger(__name__)


def _extract_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return token


async def get_token_claims(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Dict[str, Any]:
    """Decode and verify the bearer token."""
    token = _extract_token(authorization)

    if not settings.TOKEN_SECRET_KEY:
        logger.error("[AUTH] TOKEN_SECRET_KEY not configured")
        raise HTTPException(status_code=401, detail="Auth not configured")

    try:
        claims = jwt.decode(token, settings.TOKEN_SECRET_KEY, algorithms=[settings.TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"[AUTH] Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not (claims.get('sub') or claims.get('user_id')):
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims


async def get_current_user_id(claims: Dict[str, Any] = Depends(get_token_claims)) -> str:
    """Account id of the authenticated caller."""
    return str(claims.get('sub') or claims.get('user_id'))


async def require_admin(claims: Dict[str, Any] = Depends(get_token_claims)) -> str:
    """
    Account id of an authenticated operator.

    Operators carry ``role: admin`` in their token or are listed in
    ADMIN_ACCOUNT_IDS.
    """
    user_id = str(claims.get('sub') or claims.get('user_id'))
    if claims.get('role') == 'admin' or user_id in settings.ADMIN_ACCOUNT_IDS:
        return user_id
    logger.warning(f"[AUTH] Non-admin {user_id} attempted an admin operation")
    raise HTTPException(status_code=403, detail="Admin access required")


def get_billing_integration() -> BillingIntegration:
    return billing_integration
