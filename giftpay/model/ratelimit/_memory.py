from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Callable, Dict

from . import RateLimitResult

SWEEP_THRESHOLD = 1000


@dataclass
class RateLimitRecord:
    count: int
    reset_at: float  # ms


def _now_ms() -> float:
    return time.time() * 1000.0


class RateLimitStore:
    """Fixed-window counters held in this process.

    Only correct for a single-process deployment; use the redis backend when
    several workers share the budget.
    """

    def __init__(self, *, sweep_threshold: int = SWEEP_THRESHOLD,
                 clock: Callable[[], float] = _now_ms) -> None:
        self.records: Dict[str, RateLimitRecord] = {}
        self.sweep_threshold = sweep_threshold
        self.clock = clock

    def _sweep(self, now: float) -> None:
        expired = [k for k, r in self.records.items() if now > r.reset_at]
        for k in expired:
            del self.records[k]

    async def check(self, identifier: str, max_requests: int = 10,
                    window_ms: int = 60_000) -> RateLimitResult:
        now = self.clock()
        if len(self.records) > self.sweep_threshold:
            self._sweep(now)

        record = self.records.get(identifier)
        if record is None or now > record.reset_at:
            self.records[identifier] = RateLimitRecord(
                count=1, reset_at=now + window_ms
            )
            return RateLimitResult(True, max_requests - 1)

        if record.count >= max_requests:
            return RateLimitResult(False, 0)

        record.count += 1
        return RateLimitResult(True, max_requests - record.count)

    async def reset(self) -> None:
        self.records.clear()

    async def close(self) -> None:
        return None
