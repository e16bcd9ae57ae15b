"""
Cache Utilities for Billing

Provides cache key management and invalidation functions for billing data.
Uses Redis for caching credit balances.

The ledger store deletes the balance key of an account before any write
call returns, so a cached balance is never older than the last completed
write.
"""

import json
import logging
from typing import Optional

from backend.core.conf import settings
from backend.database.redis import redis_client

# Cache TTL constants (in seconds)
CREDIT_BALANCE_CACHE_TTL: int = settings.CREDIT_BALANCE_CACHE_TTL

logger = logging.getLogger(__name__)


CREDIT_BALANCE_KEY_PREFIX = "credit_balance:"


def credit_balance_key(account_id: str) -> str:
    return f"{CREDIT_BALANCE_KEY_PREFIX}{account_id}"


async def invalidate_credit_caches(account_id: str) -> bool:
    """
    Invalidate all credit-related caches for a user.

    Should be called whenever the balance or the ledger of the account
    changes.

    Args:
        account_id: The account/user ID whose caches should be invalidated

    Returns:
        True if all caches were invalidated, False on error
    """
    try:
        await redis_client.delete(credit_balance_key(account_id))

        logger.debug(f"[CACHE] Invalidated credit caches for {account_id}")
        return True

    except Exception as e:
        logger.error(f"[CACHE] Failed to invalidate credit caches for {account_id}: {e}")
        return False


async def get_cached_value(key: str) -> Optional[dict]:
    """
    Get a cached value from Redis.

    Args:
        key: Cache key

    Returns:
        Cached value as dict, or None if not found
    """
    try:
        cached = await redis_client.get(key)
        if cached:
            return json.loads(cached)
        return None

    except Exception as e:
        logger.warning(f"[CACHE] Failed to get cached value for {key}: {e}")
        return None


# Stores the value only when it carries a newer account version than the one
# already cached, so a slow reader can never overwrite a fresher balance.
_SET_IF_NEWER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    local cached_version = cjson.decode(current)['version']
    if cached_version and tonumber(cached_version) >= tonumber(ARGV[2]) then
        return 0
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return 1
"""


async def get_cached_balance(account_id: str) -> Optional[int]:
    cached = await get_cached_value(credit_balance_key(account_id))
    if cached is None:
        return None
    return int(cached['balance'])


async def cache_balance(account_id: str, balance: int, version: int) -> bool:
    """
    Cache a balance read from (or just written to) the database.

    Args:
        account_id: User/Account ID
        balance: Committed balance
        version: Account row version the balance belongs to

    Returns:
        True if the value was stored or a newer one was already cached
    """
    key = credit_balance_key(account_id)
    payload = json.dumps({'balance': balance, 'version': version})
    try:
        await redis_client.eval(_SET_IF_NEWER_SCRIPT, 1, key, payload, version, CREDIT_BALANCE_CACHE_TTL)
        return True
    except Exception as e:
        logger.warning(f"[CACHE] Failed to cache balance for {account_id}: {e}")
        return False


async def refresh_balance_cache(account_id: str, balance: int, version: int) -> bool:
    """
    Bring the cached balance up to date after a ledger write.

    Falls back to deleting the key when the versioned write fails.
    """
    if await cache_balance(account_id, balance, version):
        return True
    return await invalidate_credit_caches(account_id)
