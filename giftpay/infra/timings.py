# giftpay/infra/timings.py
"""Per-process latency aggregates for gateway and database calls.

Only running aggregates are kept (Welford), so memory stays constant no
matter how long the process lives. Read them with ``snapshot()``.
"""
from __future__ import annotations
import math
import time
from dataclasses import dataclass
from typing import Dict, List


@dataclass
class _Agg:
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0
    max: float = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)
        if value > self.max:
            self.max = value

    @property
    def std(self) -> float:
        return math.sqrt(self.m2 / (self.n - 1)) if self.n > 1 else 0.0


# single-threaded event loop, no locks needed
_AGGS: Dict[str, _Agg] = {}


def record_timing(kind: str, value: float) -> None:
    agg = _AGGS.get(kind)
    if agg is None:
        agg = _AGGS[kind] = _Agg()
    agg.add(float(value))


class timeit:
    """async usage:
        async with timeit("gateway.post"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def snapshot() -> List[Dict[str, float]]:
    return [
        {"kind": kind, "n": a.n, "mean": a.mean, "std": a.std, "max": a.max}
        for kind, a in sorted(_AGGS.items())
    ]


def reset() -> None:
    _AGGS.clear()
