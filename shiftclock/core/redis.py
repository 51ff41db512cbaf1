from __future__ import annotations
import redis.asyncio as redis
from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        return False

async def close_redis() -> None:
    global _r
    if _r is not None:
        await _r.aclose()
        _r = None

# ---- Trigger de-duplication per write event ----
async def claim_event_once(event_id: str, ttl_seconds: int | None = None) -> bool:
    """
    Return True if we successfully mark this write event as handled (first delivery),
    return False if it was already claimed (redelivery).
    """
    r = get_redis()
    ok = await r.set(
        f"schedule:write:{event_id}", "1",
        ex=ttl_seconds or _settings.trigger_dedup_ttl_seconds, nx=True,
    )
    return bool(ok)
