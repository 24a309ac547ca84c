from __future__ import annotations
import redis.asyncio as redis

from . import RateLimitResult


def k_rl(identifier: str) -> str: return f"rl:{identifier}"


class RateLimitStore:
    """Fixed-window counters shared by every worker through redis."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def check(self, identifier: str, max_requests: int = 10,
                    window_ms: int = 60_000) -> RateLimitResult:
        key = k_rl(identifier)
        # INCR + PEXPIRE NX in one round trip; the first hit opens the window
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(key)
        pipe.pexpire(key, window_ms, nx=True)
        count, _ = await pipe.execute()
        count = int(count)
        if count > max_requests:
            return RateLimitResult(False, 0)
        return RateLimitResult(True, max_requests - count)

    async def reset(self) -> None:
        keys = [k async for k in self.r.scan_iter(match="rl:*")]
        if keys:
            await self.r.delete(*keys)

    async def close(self) -> None:
        await self.r.aclose()
