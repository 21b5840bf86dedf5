# bindexer/ports/storage.py
from __future__ import annotations

import enum
from typing import Any, Iterable, Protocol
from ..domain.models import ChunkRec, EventDescriptor, LogRecord


class InsertOutcome(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    ERROR = "error"
    SKIPPED = "skipped"      # no table registered for the event


class StatsSink(Protocol):
    def record(self, outcome: InsertOutcome) -> None: ...


class EventStore(Protocol):
    """Port for the per-event relational tables."""

    def sync_schemas(self, events: Iterable[EventDescriptor]) -> list[str]:
        """Create (if missing) one table per event; return the names that are ready."""

    def insert(self, record: LogRecord, event_name: str, stats: StatsSink | None = None) -> InsertOutcome:
        """Idempotent insert keyed by (transaction_hash, log_index). Never raises."""

    def query(
        self,
        event_name: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
        order_by: str = "timestamp",
        order_direction: str = "DESC",
    ) -> list[dict[str, Any]]:
        """Equality-filtered read; empty when the table does not exist."""

    def list_event_names(self) -> list[str]:
        """Names of the events that have a table."""

    def count(self, event_name: str) -> int:
        """Stored rows for the event; 0 when the table does not exist."""


class ManifestSink(Protocol):
    """Port for appending unit-of-work outcome records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""
