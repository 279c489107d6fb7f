# keyshop/infra/timings.py
from __future__ import annotations
import gzip
import json
import logging
import math
import os
import socket
import time
from typing import Dict

logger = logging.getLogger(__name__)

# ------------ hot path: constant-size update ------------
# one running aggregate per kind; no locks, single-threaded event loop


class _Running:
    """Welford running mean and variance; O(1) memory per kind."""
    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)

    def std(self) -> float:
        # sample standard deviation
        if self.n < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.n - 1))


_TIMINGS: Dict[str, _Running] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    agg = _TIMINGS.get(kind)
    if agg is None:
        agg = _Running()
        _TIMINGS[kind] = agg
    agg.add(float(value))


class timeit:
    """async usage:
        async with timeit("assign"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ read side ------------

def aggregates() -> Dict[str, Dict[str, float]]:
    out = {}
    for kind, agg in _TIMINGS.items():
        out[kind] = {"n": agg.n, "mean": agg.mean, "std": agg.std()}
    return out


def _to_ndjson_aggregates(worker_id: str) -> bytes:
    # one NDJSON line per kind: {"kind","worker_id","n","mean","std"}
    lines = []
    for kind, agg in aggregates().items():
        rec = {"kind": kind, "worker_id": worker_id, **agg}
        lines.append(json.dumps(rec, separators=(",", ":")) + "\n")
    return ("".join(lines)).encode("utf-8")


def reset() -> None:
    _TIMINGS.clear()


def dump_aggregates(path: str) -> int:
    """
    Append the current aggregates to a gzipped NDJSON file and clear them.
    Returns the number of kinds written.
    """
    if not _TIMINGS:
        return 0
    n = len(_TIMINGS)
    raw = _to_ndjson_aggregates(f"{os.getpid()}@{socket.gethostname()}")
    try:
        with gzip.open(path, "ab") as f:
            f.write(raw)
    finally:
        _TIMINGS.clear()
    logger.info("timings dumped to %s (%d kinds)", path, n)
    return n
