"""In-process latency samples, keyed by operation kind.

Recording is a list append on the event loop thread; aggregation happens
only when ``snapshot()`` is called (admin endpoint).
"""
from __future__ import annotations
import statistics
import time
from typing import Dict, List

_SAMPLES: Dict[str, List[float]] = {}

MAX_SAMPLES_PER_KIND = 10_000


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.setdefault(kind, [])
    if len(samples) >= MAX_SAMPLES_PER_KIND:
        # drop the oldest half
        del samples[: len(samples) // 2]
    samples.append(float(seconds))


class timeit:
    """``async with timeit("scheduled.reserve"): ...``

    Records wall time even when the body raises.
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
        return False


def snapshot() -> List[Dict[str, float]]:
    out = []
    for kind in sorted(_SAMPLES):
        vals = _SAMPLES[kind]
        if not vals:
            continue
        std = statistics.stdev(vals) if len(vals) > 1 else 0.0
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean_ms": statistics.mean(vals) * 1000,
            "std_ms": std * 1000,
            "max_ms": max(vals) * 1000,
        })
    return out


def reset() -> None:
    _SAMPLES.clear()
