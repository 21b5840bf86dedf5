from __future__ import annotations
import asyncio, time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Sequence

from rich.progress import Progress

from ..domain.decoding import decode_log
from ..domain.models import BlockRange, ChunkRec, ContractTarget, EventDescriptor, EventLog
from ..domain.value_types import Address, Status
from ..errors import ChainUnavailableError, ConfigurationError, InvalidRangeError
from ..log import ThrottledLogger, format_duration, get_logger
from ..ports.rpc import ChainClient
from ..ports.storage import EventStore, InsertOutcome, ManifestSink
from .planning import merge_intervals, run_batches, subtract_interval
from .retry import RATE_LIMITED, TOO_MANY_LOGS, RetryPolicy
from .stats import IngestStats, RunStats

logger = get_logger(__name__)
_throttle = ThrottledLogger(logger)

Sleep = Callable[[float], Awaitable[None]]


def ingest_logs(
    store: EventStore,
    event: EventDescriptor,
    raw_logs: Iterable[EventLog],
    stats: IngestStats,
    contract: str | None = None,
) -> int:
    """Decode and insert each raw log. Bad rows are counted, never raised. Returns rows inserted.

    Blocking: coroutines hand it to `asyncio.to_thread`.
    """
    inserted = 0
    for raw in raw_logs:
        stats.logs += 1
        try:
            rec = decode_log(raw, event)
        except Exception as e:
            stats.errors += 1
            _throttle.log("decode_errors", "warning", "decode_failed",
                          event_name=event.name, contract=contract, tx=raw.tx_hash, error=str(e))
            continue
        if store.insert(rec, event.name, stats) is InsertOutcome.INSERTED:
            inserted += 1
    return inserted


@dataclass(slots=True)
class UnitReport:
    contract: str
    event: str
    from_block: int
    to_block: int
    done_ranges: int = 0
    failed_ranges: list[tuple[int, int]] = field(default_factory=list)
    logs: int = 0
    inserted: int = 0
    splits: int = 0
    attempts: int = 0

    @property
    def ok(self) -> bool: return not self.failed_ranges


@dataclass(slots=True)
class BackfillReport:
    from_block: int
    to_block: int
    height: int
    elapsed_s: float
    stats: dict[str, int]


class BackfillDriver:
    """
    Per-(contract, event, range) fetch state machine.

    Ranges live on an explicit worklist; a range whose response is too large is
    replaced by its two halves (left first), each with a fresh attempt counter.
    Rate-limited and other failures retry the same range until the policy's
    ceiling, then the range is recorded as failed and the worklist continues.
    """

    def __init__(
        self,
        client: ChainClient,
        store: EventStore,
        contracts: Sequence[ContractTarget],
        events: Sequence[EventDescriptor],
        retry_policy: RetryPolicy | None = None,
        stats: RunStats | None = None,
        manifest: ManifestSink | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.store = store
        self.contracts = list(contracts)
        self.events = list(events)
        self.policy = retry_policy or RetryPolicy()
        self.stats = stats or RunStats()
        self.manifest = manifest
        self._sleep = sleep

    def pairs(self) -> list[tuple[ContractTarget, EventDescriptor]]:
        return [(c, ev) for c in self.contracts for ev in self.events if c.indexes(ev)]

    async def process_batch(self, from_block: int, to_block: int) -> list[UnitReport]:
        batch = self.stats.new_batch()
        reports: list[UnitReport] = []
        for contract, ev in self.pairs():
            lo = max(from_block, contract.start_block or from_block)
            if lo > to_block:
                continue
            rep = await self.process_unit(contract.address, ev, lo, to_block, stats=batch)
            reports.append(rep)
            logger.debug("unit_done", contract=contract.label, event_name=ev.name,
                         from_block=lo, to_block=to_block, logs=rep.logs, inserted=rep.inserted,
                         failed=len(rep.failed_ranges))
        self.stats.close_batch(batch)
        if batch.logs or batch.errors or batch.failed_units:
            logger.info("batch_summary", from_block=from_block, to_block=to_block, **batch.snapshot())
        return reports

    async def process_unit(
        self,
        address: Address,
        event: EventDescriptor,
        from_block: int,
        to_block: int,
        stats: IngestStats | None = None,
    ) -> UnitReport:
        own = stats is None
        st = self.stats.new_batch() if own else stats
        report = UnitReport(contract=str(address), event=event.name, from_block=from_block, to_block=to_block)
        stack: list[BlockRange] = [BlockRange(from_block, to_block)]
        while stack:
            r = stack.pop()
            outcome = await self._fetch_range(address, event, r, st, report)
            if outcome == "split":
                left, right = r.split()
                stack.append(right)
                stack.append(left)
                report.splits += 1
                st.split_count += 1
            elif outcome == "failed":
                report.failed_ranges.append((r.start, r.end))
                st.failed_units += 1
            else:
                report.done_ranges += 1
        if own:
            self.stats.close_batch(st)
        return report

    async def _fetch_range(
        self, address: Address, event: EventDescriptor, r: BlockRange, stats: IngestStats, report: UnitReport,
    ) -> str:
        attempt = 0
        while True:
            report.attempts += 1
            try:
                logs = await self.client.get_logs(address, event, r.start, r.end)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = self.policy.classify(e)
                if kind == TOO_MANY_LOGS:
                    if r.is_single():
                        logger.warning("unsplittable_block", event_name=event.name, contract=str(address),
                                       block=r.start, error=str(e))
                        await self._record(address, event, r, "failed", attempt + 1, str(e), 0)
                        return "failed"
                    logger.info("range_split", event_name=event.name, from_block=r.start, to_block=r.end)
                    return "split"
                attempt += 1
                if not self.policy.should_retry(attempt):
                    logger.error("range_failed", event_name=event.name, contract=str(address),
                                 from_block=r.start, to_block=r.end, attempts=attempt, error=str(e))
                    await self._record(address, event, r, "failed", attempt, str(e), 0)
                    return "failed"
                delay = self.policy.rate_limit_delay(attempt) if kind == RATE_LIMITED else self.policy.error_delay(attempt)
                stats.retries += 1
                logger.warning("range_retry", kind=kind, event_name=event.name, from_block=r.start, to_block=r.end,
                               attempt=attempt, max_retries=self.policy.max_retries, delay_s=delay)
                await self._sleep(delay)
                continue
            n = await asyncio.to_thread(ingest_logs, self.store, event, logs, stats, str(address))
            report.logs += len(logs)
            report.inserted += n
            await self._record(address, event, r, "done", attempt + 1, None, len(logs))
            return "done"

    async def _record(self, address: Address, event: EventDescriptor, r: BlockRange,
                      status: Status, attempts: int, err: str | None, logs_cnt: int) -> None:
        if self.manifest is None:
            return
        try:
            await self.manifest.append(ChunkRec(
                from_block=r.start, to_block=r.end, status=status, attempts=attempts, error=err,
                logs=logs_cnt, updated_at=time.time(), contract=str(address), event=event.name,
            ))
        except OSError as e:
            _throttle.log("manifest_errors", "error", "manifest_write_failed", error=str(e))


async def current_head(client: ChainClient) -> int:
    try:
        return await client.current_height()
    except ChainUnavailableError:
        raise
    except Exception as e:
        raise ChainUnavailableError(f"cannot read the current block height: {e}") from e


class Backfiller:
    """Validates the request against the chain head and drives the batches."""

    def __init__(self, driver: BackfillDriver, batch_size: int, progress: Progress | None = None) -> None:
        self.driver = driver
        self.batch_size = batch_size
        self.progress = progress

    async def run(self, start_block: int, end_block: int | None = None) -> BackfillReport:
        if not self.driver.contracts:
            raise ConfigurationError("at least one contract is required", field="contracts",
                                     suggestions=["add a contract with --contract or in the config file"])
        if not self.driver.events:
            raise ConfigurationError("at least one event is required", field="events",
                                     suggestions=["add an event signature with --event or in the config file"])
        height = await current_head(self.driver.client)
        if start_block > height:
            raise InvalidRangeError(start_block, height, f"start block is beyond the current height {height}")
        last = height if end_block is None else min(end_block, height)

        t0 = time.monotonic()
        await run_batches(start_block, last, self.batch_size, self.driver.process_batch, progress=self.progress)
        elapsed = time.monotonic() - t0
        snap = self.driver.stats.total.snapshot()
        logger.info("session_summary", from_block=start_block, to_block=last,
                    elapsed=format_duration(elapsed), **snap)
        return BackfillReport(from_block=start_block, to_block=last, height=height, elapsed_s=elapsed, stats=snap)


def manifest_gaps(records: Iterable[ChunkRec], first: int, last: int) -> dict[tuple[str, str], list[tuple[int, int]]]:
    """Ranges of [first, last] with no `done` record, per (contract, event) seen in the manifest."""
    done: dict[tuple[str, str], list[tuple[int, int]]] = defaultdict(list)
    for rec in records:
        key = (rec.contract or "?", rec.event or "?")
        done.setdefault(key, [])
        if rec.status == "done":
            done[key].append((rec.from_block, rec.to_block))
    out: dict[tuple[str, str], list[tuple[int, int]]] = {}
    for key, ivs in done.items():
        gaps = subtract_interval((first, last), merge_intervals(ivs))
        if gaps:
            out[key] = gaps
    return out
