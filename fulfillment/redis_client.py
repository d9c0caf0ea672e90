import redis.asyncio as redis
from fulfillment.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        if not settings.redis_url:
            raise RuntimeError("REDIS_URL is not configured")
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def publish_event(channel: str, message: str) -> int:
    """PUBLISH to a pub/sub channel. Returns the number of subscribers that received it."""
    r = await get_redis()
    return await r.publish(channel, message)
