from typing import NamedTuple, Optional
import redis.asyncio as redis


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int


# Factory keeps server.py simple and backend-agnostic:
def new_store(backend: str = "memory", *, r: Optional[redis.Redis] = None):
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "RateLimitStore(redis) requires r=redis.Redis"
            )
        from ._redis import RateLimitStore as _RedisStore
        return _RedisStore(r)
    if backend != "memory":
        raise RuntimeError(f"unknown rate limit backend: {backend!r}")
    from ._memory import RateLimitStore as _MemoryStore
    return _MemoryStore()


__all__ = ["RateLimitResult", "new_store"]
