"""Minimal in-process metrics shim for counters and timers.

Histograms are exported into flattened counters for the /metrics endpoint to
keep payloads simple.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager

_counters: dict[str, int] = defaultdict(int)
_histograms: dict[str, dict[str, int]] = {}
_hist_sums: dict[str, int] = defaultdict(int)
_hist_counts: dict[str, int] = defaultdict(int)


def inc_counter(name: str, value: int = 1) -> None:
    _counters[name] += int(value)


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def reset_counters() -> None:
    _counters.clear()
    _histograms.clear()
    _hist_sums.clear()
    _hist_counts.clear()


def get_counters() -> dict[str, int]:
    """Return a shallow copy of all counters for diagnostics."""
    out = dict(_counters)
    for name, buckets in _histograms.items():
        for b_lbl, cnt in buckets.items():
            out[f"histo.{name}.{b_lbl}"] = cnt
        out[f"histo.{name}.sum"] = _hist_sums.get(name, 0)
        out[f"histo.{name}.count"] = _hist_counts.get(name, 0)
    return out


def observe_histogram(name: str, value: int, *, buckets: list[int] | None = None) -> None:
    """Record a value in a histogram with <=-style buckets.

    - buckets: the upper bounds for each bucket in milliseconds. Defaults to
      [1, 2, 5, 10, 20, 50, 100, 250, 500, 1000, 2000, 5000].
    - We also emit an overflow bucket labeled 'gt_{last}'.
    """
    if buckets is None:
        buckets = [1, 2, 5, 10, 20, 50, 100, 250, 500, 1000, 2000, 5000]
    h = _histograms.setdefault(name, {})
    placed = False
    for ub in buckets:
        if value <= ub:
            key = f"le_{ub}"
            h[key] = h.get(key, 0) + 1
            placed = True
            break
    if not placed:
        key = f"gt_{buckets[-1]}"
        h[key] = h.get(key, 0) + 1
    _hist_sums[name] += int(value)
    _hist_counts[name] += 1


@contextmanager
def timed(name: str) -> Iterator[None]:
    """Observe the wall-clock duration of the block in ``name`` (milliseconds)."""
    start = time.perf_counter()
    try:
        yield
    finally:
        observe_histogram(name, int((time.perf_counter() - start) * 1000))


# Convenience functions for the import pipeline

def record_import_outcome(status: str) -> None:
    inc_counter(f"import.{status}")


def record_adapter_call(adapter_id: str, operation: str, ok: bool) -> None:
    """Count one outbound adapter call, both globally and per adapter."""
    outcome = "ok" if ok else "failed"
    inc_counter(f"adapters.{operation}.{outcome}")
    inc_counter(f"adapters.{adapter_id}.{operation}.{outcome}")
