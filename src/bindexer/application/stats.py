from __future__ import annotations
from dataclasses import asdict, dataclass, fields

from ..ports.storage import InsertOutcome


@dataclass(slots=True)
class IngestStats:
    processed: int = 0
    duplicates: int = 0
    errors: int = 0
    logs: int = 0
    failed_units: int = 0
    split_count: int = 0
    retries: int = 0

    def record(self, outcome: InsertOutcome) -> None:
        if outcome is InsertOutcome.INSERTED:
            self.processed += 1
        elif outcome is InsertOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is InsertOutcome.ERROR:
            self.errors += 1

    def merge(self, other: IngestStats) -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def snapshot(self) -> dict[str, int]: return asdict(self)


class RunStats:
    """Run totals; each batch works on its own IngestStats that is folded in afterwards."""

    def __init__(self) -> None:
        self.total = IngestStats()
        self.live = IngestStats()
        self.batches = 0

    def new_batch(self) -> IngestStats: return IngestStats()

    def close_batch(self, batch: IngestStats) -> None:
        self.batches += 1
        self.total.merge(batch)

    def summary(self) -> dict[str, int]:
        out = {f"backfill_{k}": v for k, v in self.total.snapshot().items()}
        out.update({f"live_{k}": v for k, v in self.live.snapshot().items() if k in ("processed", "duplicates", "errors", "logs")})
        out["batches"] = self.batches
        return out
