"""
Redis client initialization and the recovery-sweep lease.

Several worker processes may host the scheduler; the lease makes sure only
one of them runs the hourly sweep at a time.
"""

import logging
import uuid
import redis.asyncio as redis
from fleetrental.app.core.config import settings

logger = logging.getLogger("fleetrental.redis")

SWEEP_LEASE_KEY = "fleetrental:sweep-lease"

# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """
    Get Redis client instance.
    
    This can be used as a FastAPI dependency if needed.
    """
    return redis_client


async def ping_redis() -> bool:
    """
    Test Redis connection.
    
    Returns:
        True if connection successful, False otherwise
    """
    try:
        return await redis_client.ping()
    except Exception:
        return False


async def acquire_sweep_lease(client, ttl_seconds: int) -> bool:
    """
    Try to take the sweep lease for ``ttl_seconds``.

    Returns True when this process may sweep. An unreachable Redis never
    blocks the sweep: the database updates are conditional, so two
    overlapping sweeps still apply each transition once.
    """
    if client is None:
        return True
    try:
        acquired = await client.set(SWEEP_LEASE_KEY, uuid.uuid4().hex, ex=ttl_seconds, nx=True)
    except Exception as exc:
        logger.warning("Sweep lease unavailable (%s), sweeping without it", exc)
        return True
    return bool(acquired)
