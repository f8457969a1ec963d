# ticketdesk/infra/timings.py
from __future__ import annotations
import logging
import statistics
import time
from typing import Any, Dict, List

from fastapi import FastAPI

log = logging.getLogger(__name__)

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("db.check_in"):
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


# ------------ stats only when asked ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def summary() -> List[Dict[str, Any]]:
    """One record per kind: {"kind", "n", "mean", "std", "max"} (seconds)."""
    out = []
    for kind in sorted(_TIMINGS):
        vals = _TIMINGS[kind]
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()


def install_shutdown_report(app: FastAPI) -> None:
    """Log the aggregated timings once when the app shuts down."""

    @app.on_event("shutdown")
    async def _report_on_shutdown():
        for rec in summary():
            log.info(
                "timing %-32s n=%-6d mean=%.2fms std=%.2fms max=%.2fms",
                rec["kind"], rec["n"], rec["mean"] * 1000,
                rec["std"] * 1000, rec["max"] * 1000,
            )
        reset()
