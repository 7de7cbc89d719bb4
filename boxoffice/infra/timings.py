# boxoffice/infra/timings.py
"""
In-process operation timings.

Core operations are wrapped in `async with timeit("<area>.<op>")`; samples
are kept per kind in memory and only aggregated when an admin asks
(GET /api/admin/timings). Each worker process reports its own numbers.
"""
from __future__ import annotations
import time
from typing import Dict, List, Any
import statistics

# kind -> durations in seconds; appended from the event loop only
_TIMINGS: Dict[str, List[float]] = {}

MAX_SAMPLES_PER_KIND = 10_000


def record_timing(kind: str, seconds: float) -> None:
    samples = _TIMINGS.setdefault(kind, [])
    if len(samples) >= MAX_SAMPLES_PER_KIND:
        # drop the older half
        del samples[: len(samples) // 2]
    samples.append(float(seconds))


class timeit:
    """
        async with timeit("holds.create_or_reuse"):
            ...
    Records the duration whether or not the body raised.
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


def _percentile(ordered: List[float], p: float) -> float:
    if not ordered:
        return 0.0
    k = round(p / 100 * (len(ordered) - 1))
    return ordered[max(0, min(len(ordered) - 1, k))]


def summarize(kind: str, samples: List[float]) -> Dict[str, Any]:
    ordered = sorted(samples)
    return {
        "kind": kind,
        "n": len(ordered),
        "mean_ms": statistics.fmean(ordered) * 1000 if ordered else 0.0,
        "p50_ms": _percentile(ordered, 50) * 1000,
        "p99_ms": _percentile(ordered, 99) * 1000,
        "max_ms": ordered[-1] * 1000 if ordered else 0.0,
    }


def snapshot() -> List[Dict[str, Any]]:
    return [summarize(kind, _TIMINGS[kind]) for kind in sorted(_TIMINGS)]


def reset() -> None:
    _TIMINGS.clear()
