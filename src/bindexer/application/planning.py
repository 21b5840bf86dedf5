from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator

from rich.progress import Progress, TaskID

from ..domain.models import BlockRange
from ..log import format_duration, get_logger

logger = get_logger(__name__)

OnBatch = Callable[[int, int], Awaitable[None]]

def iter_batches(first: int, last: int, batch_size: int) -> Iterator[BlockRange]:
    """Contiguous inclusive ranges of at most `batch_size` blocks tiling [first, last]."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    b = first
    while b <= last:
        nb = min(b + batch_size - 1, last)
        yield BlockRange(b, nb)
        b = nb + 1


@dataclass(slots=True)
class BatchProgress:
    first: int
    last: int
    processed_blocks: int = 0
    batches: int = 0
    started_at: float = field(default_factory=time.monotonic)
    _milestone: int = 0

    @property
    def total_blocks(self) -> int: return max(0, self.last - self.first + 1)
    @property
    def percent(self) -> float:
        return 100.0 if self.total_blocks == 0 else 100.0 * self.processed_blocks / self.total_blocks

    def rate(self, now: float | None = None) -> float:
        elapsed = (now if now is not None else time.monotonic()) - self.started_at
        return self.processed_blocks / elapsed if elapsed > 0 else 0.0

    def eta(self, now: float | None = None) -> float | None:
        r = self.rate(now)
        return (self.total_blocks - self.processed_blocks) / r if r > 0 else None

    def advance(self, r: BlockRange) -> bool:
        """Account one finished batch; True when this is a point worth logging."""
        self.processed_blocks += r.span()
        self.batches += 1
        milestone = int(self.percent // 10)
        hit = milestone > self._milestone
        self._milestone = max(self._milestone, milestone)
        return hit or self.batches % 10 == 0


async def run_batches(
    first: int,
    last: int,
    batch_size: int,
    on_batch: OnBatch,
    *,
    progress: Progress | None = None,
) -> int:
    """
    Sequentially hand each batch to `on_batch`. A failing batch is logged and
    skipped; the loop always reaches `last`, which is returned.
    """
    state = BatchProgress(first, last)
    task: TaskID | None = None
    if progress is not None:
        task = progress.add_task(f"{first:,}-{last:,}", total=state.total_blocks)
    logger.info("backfill_start", from_block=first, to_block=last, blocks=state.total_blocks, batch_size=batch_size)

    for r in iter_batches(first, last, batch_size):
        try:
            await on_batch(r.start, r.end)
        except Exception as e:
            logger.error("batch_failed", from_block=r.start, to_block=r.end, error=str(e))
        if state.advance(r):
            eta = state.eta()
            logger.info("backfill_progress",
                        blocks=f"{state.processed_blocks}/{state.total_blocks}",
                        percent=round(state.percent, 1),
                        rate=f"{state.rate():.1f} blocks/s",
                        eta=format_duration(eta) if eta is not None else "n/a")
        if progress is not None and task is not None:
            progress.advance(task, r.span())

    logger.info("backfill_done", to_block=last, batches=state.batches,
                elapsed=format_duration(time.monotonic() - state.started_at))
    return last

def merge_intervals(intervals: list[tuple[int,int]]) -> list[tuple[int,int]]:
    if not intervals: return []
    intervals = sorted(intervals)
    merged: list[list[int]] = [[intervals[0][0], intervals[0][1]]]
    for s, e in intervals[1:]:
        ms, me = merged[-1]
        if s <= me + 1: merged[-1][1] = max(me, e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]

def subtract_interval(iv: tuple[int,int], covered: list[tuple[int,int]]) -> list[tuple[int,int]]:
    s, e = iv
    if s > e: return []
    if not covered: return [iv]
    res: list[tuple[int,int]] = []
    cur = s
    for cs, ce in covered:
        if ce < cur: continue
        if cs > e: break
        if cs > cur: res.append((cur, min(e, cs - 1)))
        cur = max(cur, ce + 1)
        if cur > e: break
    if cur <= e: res.append((cur, e))
    return res
