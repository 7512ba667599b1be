"""
Data model shared by the importer stages.

- MessageFragment: one serialized message subtree, handed from tokenizer to extractor
- StructuredRecord: header fields plus named repeating groups
- Extraction: explicit result of mapping one fragment (record / skip / failed)
- BatchResult: outcome of persisting one batch
- ImportRun: counters and state for one pipeline invocation

The PostgreSQL schema lives next to this module as a Jinja2 template.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import perf_counter
from typing import Any, Optional
from jinja2 import Template

from ..errors import ExtractionError, ExtractionErrorKind


@dataclass(frozen=True)
class MessageFragment:
    """Self-contained XML subtree for one top-level message."""

    xml: bytes
    index: int
    line: Optional[int] = None

    def preview(self, limit: int = 200) -> str:
        return self.xml[:limit].decode("utf-8", errors="replace")


@dataclass
class StructuredRecord:
    """
    Mapped result of one message.

    ``header`` is a flat column -> scalar mapping. ``groups`` maps each
    configured repeating-group name to its rows in document order; a group
    with no occurrences is an empty list, never missing. ``kind`` is the
    payload tag the record was mapped from.
    """

    identifier: str
    header: dict[str, Any]
    groups: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    position: Optional[int] = None
    kind: str = "VOUCHER"

    def group(self, name: str) -> list[dict[str, Any]]:
        return self.groups.get(name, [])

    @property
    def child_count(self) -> int:
        return sum(len(rows) for rows in self.groups.values())


class Outcome(str, Enum):
    RECORD = "record"
    SKIP = "skip"
    FAILED = "failed"


class SkipReason(str, Enum):
    NOT_TRANSACTIONAL = "not_transactional"
    MISSING_IDENTIFIER = "missing_identifier"


@dataclass(frozen=True)
class Extraction:
    """Result variant returned by the extractor; the orchestrator matches on ``outcome``."""

    outcome: Outcome
    record: Optional[StructuredRecord] = None
    reason: Optional[SkipReason] = None
    error: Optional[ExtractionError] = None
    detail: str = ""

    @classmethod
    def ok(cls, record: StructuredRecord) -> "Extraction":
        return cls(Outcome.RECORD, record=record)

    @classmethod
    def skip(cls, reason: SkipReason, detail: str = "") -> "Extraction":
        return cls(Outcome.SKIP, reason=reason, detail=detail)

    @classmethod
    def failed(cls, error: ExtractionError) -> "Extraction":
        return cls(Outcome.FAILED, error=error, detail=error.message)

    @property
    def error_kind(self) -> Optional[ExtractionErrorKind]:
        if self.error is not None:
            return self.error.kind
        if self.reason is SkipReason.MISSING_IDENTIFIER:
            return ExtractionErrorKind.MISSING_IDENTIFIER
        return None


@dataclass
class BatchResult:
    """Outcome of flushing one batch inside one transaction."""

    committed: int = 0
    duplicates: list[str] = field(default_factory=list)
    failed: list[tuple[StructuredRecord, str]] = field(default_factory=list)
    child_rows: int = 0
    child_failures: int = 0

    @property
    def size(self) -> int:
        return self.committed + len(self.duplicates) + len(self.failed)


class RunState(str, Enum):
    IDLE = "idle"
    SANITIZING = "sanitizing"
    TOKENIZING = "tokenizing"
    EXTRACTING = "extracting"
    BATCHING = "batching"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ImportRun:
    """
    Counters for one pipeline invocation.

    Only the orchestrator mutates an ImportRun. Every boundary element seen
    lands in exactly one of: empty, extracted, skipped, failed.
    """

    state: RunState = RunState.IDLE
    input_path: Optional[str] = None
    sanitized_path: Optional[str] = None
    messages_seen: int = 0
    empty_messages: int = 0
    records_extracted: int = 0
    records_skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    records_failed: int = 0
    records_committed: int = 0
    records_duplicate: int = 0
    records_rejected: int = 0
    records_lost: int = 0
    child_rows: int = 0
    child_failures: int = 0
    batches_committed: int = 0
    masters_extracted: int = 0
    hierarchy_updated: int = 0
    peak_memory: int = 0
    error: Optional[str] = None
    started_at: float = field(default_factory=perf_counter)
    finished_at: Optional[float] = None

    def record_skip(self, reason: SkipReason | str) -> None:
        key = reason.value if isinstance(reason, SkipReason) else str(reason)
        self.records_skipped += 1
        self.skip_reasons[key] = self.skip_reasons.get(key, 0) + 1

    def apply_batch(self, result: BatchResult) -> None:
        self.records_committed += result.committed
        self.records_duplicate += len(result.duplicates)
        self.records_rejected += len(result.failed)
        self.child_rows += result.child_rows
        self.child_failures += result.child_failures
        self.batches_committed += 1

    def fail(self, error: BaseException | str) -> None:
        self.state = RunState.FAILED
        self.error = str(error)

    def finish(self) -> None:
        if self.state is not RunState.FAILED:
            self.state = RunState.DONE
        self.finished_at = perf_counter()

    @property
    def accounted(self) -> int:
        """Messages accounted for by the per-outcome counters."""
        return self.empty_messages + self.records_extracted + self.records_skipped + self.records_failed

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else perf_counter()
        return max(end - self.started_at, 0.0)

    @property
    def rate(self) -> float:
        """Extracted records per second."""
        elapsed = self.elapsed
        return self.records_extracted / elapsed if elapsed > 0 else 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    def summary(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "input": self.input_path,
            "messages_found": self.messages_seen,
            "empty_messages": self.empty_messages,
            "records_extracted": self.records_extracted,
            "records_skipped": self.records_skipped,
            "skip_reasons": dict(self.skip_reasons),
            "records_failed": self.records_failed,
            "records_imported": self.records_committed,
            "records_duplicate": self.records_duplicate,
            "records_rejected": self.records_rejected,
            "records_lost": self.records_lost,
            "child_rows": self.child_rows,
            "child_failures": self.child_failures,
            "batches_committed": self.batches_committed,
            "masters_extracted": self.masters_extracted,
            "hierarchy_updated": self.hierarchy_updated,
            "total_time": round(self.elapsed, 3),
            "average_rate": round(self.rate, 2),
            "peak_memory": self.peak_memory,
            "error": self.error,
        }


# Path to schema template
SCHEMA_TEMPLATE = Path(__file__).parent / "schema.sql.j2"


def get_schema_sql(schema: str = "tally_import") -> str:
    """Render the full schema SQL for the given target schema."""
    return Template(SCHEMA_TEMPLATE.read_text(encoding="utf-8")).render(schema=schema)
