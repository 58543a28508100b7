"""Per-run aggregation for the import coordinator.

``ImportRunContext`` collects the outcome of every chunk handled by one
coordinator run (a fresh import or one resume). It never touches the database;
the durable totals live on the session. The context provides:

* Run-level counts (imported, skipped, failed, chunks committed or skipped).
* The ordered error entries produced during the run.
* Coverage tracking so a run can assert that every record index it was
  responsible for was accounted for exactly once.
* A canonical digest of the chunk outcomes for the completion log line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from Tagstash.canonical_json import compute_canonical_hash
from Tagstash.chunk_processor import ChunkOutcome
from Tagstash.schemas import ErrorLogEntry


@dataclass(frozen=True)
class ImportProgress:
    """Snapshot handed to progress callbacks after every committed chunk."""

    session_id: str
    chunk_number: int
    total_records: int
    processed_records: int
    imported_records: int
    skipped_records: int
    failed_records: int
    last_processed_index: int | None

    @property
    def percent(self) -> int:
        if self.total_records == 0:
            return 100
        return (self.processed_records * 100) // self.total_records


@dataclass
class ImportRunContext:
    session_id: str
    start_index: int
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    chunks_committed: int = 0
    chunks_skipped: int = 0
    errors: list[ErrorLogEntry] = field(default_factory=list)
    _ranges: list[tuple[int, int]] = field(default_factory=list, init=False)
    _chunk_records: list[dict[str, Any]] = field(default_factory=list, init=False)

    def record_chunk(self, outcome: ChunkOutcome, *, skipped_chunk: bool = False) -> None:
        if self._ranges and outcome.start_index <= self._ranges[-1][1]:
            raise ValueError(
                f"Chunk starting at {outcome.start_index} overlaps a range already recorded"
            )
        self._ranges.append((outcome.start_index, outcome.end_index))
        self.imported += outcome.imported
        self.skipped += outcome.skipped
        self.failed += outcome.failed
        self.errors.extend(outcome.errors)
        if skipped_chunk:
            self.chunks_skipped += 1
        else:
            self.chunks_committed += 1
        self._chunk_records.append(
            {
                "chunk": outcome.chunk_number,
                "start": outcome.start_index,
                "end": outcome.end_index,
                "imported": outcome.imported,
                "skipped": outcome.skipped,
                "failed": outcome.failed,
            }
        )

    def add_errors(self, entries: list[ErrorLogEntry]) -> None:
        self.errors.extend(entries)

    @property
    def next_index(self) -> int:
        return self._ranges[-1][1] + 1 if self._ranges else self.start_index

    def covers(self, end_exclusive: int) -> bool:
        """True when the recorded ranges tile [start_index, end_exclusive) with no gaps."""
        expected = self.start_index
        for start, end in self._ranges:
            if start != expected:
                return False
            expected = end + 1
        return expected == end_exclusive

    def summary_counts(self) -> dict[str, int]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
            "chunks_committed": self.chunks_committed,
            "chunks_skipped": self.chunks_skipped,
            "errors": len(self.errors),
        }

    def compute_run_digest(self) -> str:
        payload = {"session_id": self.session_id, "chunks": self._chunk_records}
        return compute_canonical_hash(payload).hex()
