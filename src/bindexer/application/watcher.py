from __future__ import annotations
import asyncio
from typing import Sequence

from ..domain.models import ContractTarget, EventDescriptor, EventLog
from ..log import get_logger
from ..ports.rpc import ChainClient, Unwatch
from ..ports.storage import EventStore
from .stats import IngestStats, RunStats
from .use_cases import Backfiller, BackfillReport, current_head, ingest_logs

logger = get_logger(__name__)


class LiveWatcher:
    """One subscription per (contract, event) pair; deliveries go straight to the store."""

    def __init__(
        self,
        client: ChainClient,
        store: EventStore,
        contracts: Sequence[ContractTarget],
        events: Sequence[EventDescriptor],
        stats: RunStats | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.contracts = list(contracts)
        self.events = list(events)
        self.stats = stats or RunStats()
        self.handles: list[Unwatch] = []
        self._stopped = False

    def start(self, from_block: int | None = None) -> list[Unwatch]:
        """Subscribe every pair; `from_block` None means blocks mined from now on."""
        self._stopped = False
        for contract in self.contracts:
            for ev in self.events:
                if not contract.indexes(ev):
                    continue
                try:
                    h = self.client.subscribe(contract.address, ev, self._on_logs(contract, ev),
                                              self._on_error(contract, ev), from_block=from_block)
                except Exception as e:
                    logger.error("watch_failed", contract=contract.label, event_name=ev.name, error=str(e))
                    continue
                self.handles.append(h)
                logger.info("watching", contract=contract.label, event_name=ev.name)
        return list(self.handles)

    def _on_logs(self, contract: ContractTarget, ev: EventDescriptor):
        async def deliver(logs: Sequence[EventLog]) -> None:
            if self._stopped:
                return
            delivery = IngestStats()
            inserted = await asyncio.to_thread(ingest_logs, self.store, ev, logs, delivery, contract.label)
            self.stats.live.merge(delivery)
            logger.info("live_logs", contract=contract.label, event_name=ev.name, received=len(logs),
                        inserted=inserted, duplicates=delivery.duplicates, errors=delivery.errors)
        return deliver

    def _on_error(self, contract: ContractTarget, ev: EventDescriptor):
        def report(exc: BaseException) -> None:
            logger.error("watch_error", contract=contract.label, event_name=ev.name, error=str(exc))
        return report

    def stop(self) -> None:
        self._stopped = True
        handles, self.handles = self.handles, []
        for h in handles:
            try:
                h()
            except Exception as e:
                logger.warning("unwatch_failed", error=str(e))
        if handles:
            logger.info("watchers_stopped", count=len(handles))


async def follow(watcher: LiveWatcher, backfiller: Backfiller | None, start_block: int | None) -> BackfillReport | None:
    """
    Hand over between history and live delivery at a single head reading:
    watchers begin at head + 1 and the backfill ends at head, so no block falls
    between the two.
    """
    head = await current_head(watcher.client)
    watcher.start(from_block=head + 1)
    if backfiller is None or start_block is None:
        logger.warning("no_start_block", hint="set startBlock to backfill; watching new blocks only")
        return None
    return await backfiller.run(start_block, head)
