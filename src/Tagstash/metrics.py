"""In-process counters and bucketed histograms for the import pipeline.

Everything is exposed as a flat ``name -> int`` mapping by ``get_counters``
(histograms as ``histo.<name>.le_<bound>``, ``.sum`` and ``.count``), which is
what ``GET /metrics`` returns.
"""

from __future__ import annotations

import bisect
from collections import Counter
from dataclasses import dataclass, field

DEFAULT_BUCKETS = (1, 2, 5, 10, 20, 50, 100, 250, 500, 1000, 2000, 5000)


@dataclass
class _Histogram:
    bounds: tuple[int, ...]
    buckets: Counter = field(default_factory=Counter)
    total: int = 0
    count: int = 0

    def observe(self, value: int) -> None:
        pos = bisect.bisect_left(self.bounds, value)
        label = f"le_{self.bounds[pos]}" if pos < len(self.bounds) else f"gt_{self.bounds[-1]}"
        self.buckets[label] += 1
        self.total += int(value)
        self.count += 1


_counters: Counter = Counter()
_histograms: dict[str, _Histogram] = {}


def inc_counter(name: str, value: int = 1) -> None:
    _counters[name] += int(value)


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def observe_histogram(name: str, value: int, *, buckets: tuple[int, ...] | None = None) -> None:
    """Record ``value`` in the first bucket whose upper bound is >= value."""
    hist = _histograms.get(name)
    if hist is None:
        hist = _histograms[name] = _Histogram(bounds=tuple(buckets or DEFAULT_BUCKETS))
    hist.observe(value)


def reset_counters() -> None:
    _counters.clear()
    _histograms.clear()


def get_counters() -> dict[str, int]:
    out = dict(_counters)
    for name, hist in _histograms.items():
        for label, n in hist.buckets.items():
            out[f"histo.{name}.{label}"] = n
        out[f"histo.{name}.sum"] = hist.total
        out[f"histo.{name}.count"] = hist.count
    return out


# Import pipeline helpers


def record_chunk_committed(duration_ms: int, *, imported: int, skipped: int, failed: int) -> None:
    inc_counter("importer.chunk.committed")
    inc_counter("importer.records.imported", imported)
    inc_counter("importer.records.skipped", skipped)
    inc_counter("importer.records.failed", failed)
    observe_histogram("importer.chunk_ms", duration_ms)


def record_chunk_rollback() -> None:
    inc_counter("importer.chunk.rollback")


def record_session_transition(status: str) -> None:
    inc_counter(f"importer.sessions.{status}")
