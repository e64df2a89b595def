"""
config/redis_client.py
Async Redis client for queue locking, the JWT deny-list, phone login codes,
rate limiting, and pub/sub (realtime fan-out between API instances).
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Helpers ───────────────────────────────────────────────────
class RedisCache:
    """Queue locks, the JWT deny-list, rate-limit counters and login codes."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Locking ──────────────────────────────────────────────
    async def acquire_lock(self, name: str, owner: str, ttl: int = settings.REDIS_QUEUE_LOCK_TTL) -> bool:
        """
        Atomic lock using SET NX (set if not exists).
        Returns True if lock acquired, False if someone else holds it.
        """
        result = await self.client.set(name, owner, ex=ttl, nx=True)
        return bool(result)

    async def release_lock(self, name: str, owner: str) -> None:
        """Release the lock only if we still own it (it may have expired and been re-taken)."""
        if await self.client.get(name) == owner:
            await self.client.delete(name)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        current_count = await self.client.incr(key)
        if current_count == 1:
            await self.client.expire(key, window_seconds)
        return current_count <= limit

    # ── Phone OTP ─────────────────────────────────────────────
    async def start_otp_cooldown(self, phone: str, seconds: int) -> bool:
        """True when a new code may be sent now. Blocks further sends for `seconds`."""
        return bool(await self.client.set(f"otp_cooldown:{phone}", "1", ex=seconds, nx=True))

    async def store_otp(self, phone: str, code_hash: str, ttl: int) -> None:
        await self.client.setex(f"otp:{phone}", ttl, code_hash)
        await self.client.delete(f"otp_attempts:{phone}")

    async def get_otp(self, phone: str) -> Optional[str]:
        return await self.client.get(f"otp:{phone}")

    async def count_otp_attempt(self, phone: str, ttl: int) -> int:
        key = f"otp_attempts:{phone}"
        attempts = await self.client.incr(key)
        if attempts == 1:
            await self.client.expire(key, ttl)
        return attempts

    async def clear_otp(self, phone: str, cooldown: bool = False) -> None:
        keys = [f"otp:{phone}", f"otp_attempts:{phone}"]
        if cooldown:
            keys.append(f"otp_cooldown:{phone}")
        await self.client.delete(*keys)
