import asyncio

import pytest

from bindexer.adapters.manifest_jsonl import JSONLManifest
from bindexer.application.retry import OTHER, RATE_LIMITED, TOO_MANY_LOGS, RetryPolicy
from bindexer.application.use_cases import Backfiller, BackfillDriver, ingest_logs, manifest_gaps
from bindexer.application.stats import IngestStats
from bindexer.application.watcher import LiveWatcher
from bindexer.domain.models import EventLog, LogRecord
from bindexer.errors import (
    ChainUnavailableError, ConfigurationError, InvalidRangeError, RateLimitedError, ResponseTooLargeError, RpcError,
)
from bindexer.log import setup_logging
from bindexer.ports.storage import InsertOutcome
from fakes import APPROVAL, OTHER_TOKEN, TOKEN, TRANSFER, FakeChain, Sleeps, target, transfer_log, tx_hash


def _driver(chain, store, contracts=None, events=None, policy=None, **kw):
    sleeps = Sleeps()
    d = BackfillDriver(chain, store, contracts or [target()], events or [TRANSFER],
                       retry_policy=policy or RetryPolicy(), sleep=sleeps, **kw)
    return d, sleeps


@pytest.mark.asyncio
async def test_single_block_backfill(store):
    chain = FakeChain(height=200, logs=[transfer_log(100, value=42)])
    d, _ = _driver(chain, store)
    report = await Backfiller(d, batch_size=4999).run(100, 100)
    assert chain.calls == [(100, 100)]
    (row,) = store.query("Transfer")
    assert row["block_number"] == 100
    assert row["param_2_uint256"] == "42"
    assert report.stats["processed"] == 1


@pytest.mark.asyncio
async def test_batches_up_to_the_current_height(store):
    chain = FakeChain(height=10_000)
    d, _ = _driver(chain, store)
    report = await Backfiller(d, batch_size=4999).run(1)
    assert chain.calls == [(1, 4999), (5000, 9998), (9999, 10_000)]
    assert (report.to_block, report.height) == (10_000, 10_000)
    assert d.stats.batches == 3


@pytest.mark.asyncio
async def test_end_block_is_clamped_to_height(store):
    chain = FakeChain(height=50)
    d, _ = _driver(chain, store)
    report = await Backfiller(d, batch_size=100).run(10, 500)
    assert chain.calls == [(10, 50)]
    assert report.to_block == 50


@pytest.mark.asyncio
async def test_too_large_response_splits_at_midpoint(store):
    logs = [transfer_log(b) for b in (1, 25, 50, 51, 99, 100)]
    chain = FakeChain(height=100, logs=logs)
    chain.fail(1, 100, ResponseTooLargeError("log response size exceeded"))
    d, sleeps = _driver(chain, store)
    await Backfiller(d, batch_size=1000).run(1)
    assert chain.calls == [(1, 100), (1, 50), (51, 100)]
    assert sleeps.delays == []
    assert store.count("Transfer") == 6
    assert d.stats.total.split_count == 1
    assert d.stats.total.duplicates == 0


@pytest.mark.asyncio
async def test_split_recognised_from_error_text(store):
    chain = FakeChain(height=10, logs=[transfer_log(3)])
    chain.fail(1, 10, RpcError("query returned more than 10000 results"))
    chain.fail(1, 5, RpcError("Too many logs in range"))
    d, _ = _driver(chain, store)
    rep = await d.process_unit(TOKEN, TRANSFER, 1, 10)
    assert chain.calls == [(1, 10), (1, 5), (1, 3), (4, 5), (6, 10)]
    assert rep.splits == 2 and rep.ok
    assert store.count("Transfer") == 1


@pytest.mark.asyncio
async def test_unsplittable_block_fails_without_retry(store):
    chain = FakeChain(height=10)
    chain.fail(7, 7, ResponseTooLargeError("too many logs"))
    d, sleeps = _driver(chain, store)
    rep = await d.process_unit(TOKEN, TRANSFER, 7, 7)
    assert rep.failed_ranges == [(7, 7)]
    assert chain.calls == [(7, 7)]
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_rate_limited_range_gives_up_and_backfill_continues(store):
    chain = FakeChain(height=20, logs=[transfer_log(15)])
    chain.fail(1, 10, *[RateLimitedError("429 Too Many Requests") for _ in range(5)])
    d, sleeps = _driver(chain, store, policy=RetryPolicy(max_retries=3, base_delay_ms=1000))
    await Backfiller(d, batch_size=10).run(1)
    assert chain.calls == [(1, 10)] * 4 + [(11, 20)]
    assert sleeps.delays == [2.0, 4.0, 8.0]
    assert d.stats.total.failed_units == 1
    assert d.stats.total.retries == 3
    assert store.count("Transfer") == 1


@pytest.mark.asyncio
async def test_rate_limit_recovers_before_ceiling(store):
    chain = FakeChain(height=10, logs=[transfer_log(4)])
    chain.fail(1, 10, RateLimitedError("rate limit"))
    d, sleeps = _driver(chain, store)
    rep = await d.process_unit(TOKEN, TRANSFER, 1, 10)
    assert rep.ok and rep.attempts == 2
    assert sleeps.delays == [2.0]
    assert store.count("Transfer") == 1


@pytest.mark.asyncio
async def test_other_errors_use_linear_backoff(store):
    chain = FakeChain(height=10)
    chain.fail(1, 10, *[RpcError("internal error") for _ in range(3)])
    d, sleeps = _driver(chain, store, policy=RetryPolicy(max_retries=2, base_delay_ms=1000))
    rep = await d.process_unit(TOKEN, TRANSFER, 1, 10)
    assert sleeps.delays == [1.0, 2.0]
    assert rep.failed_ranges == [(1, 10)]
    assert rep.attempts == 3


def test_retry_policy_delays():
    p = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000)
    assert [p.rate_limit_delay(a) for a in (1, 2, 3)] == [2.0, 4.0, 5.0]
    assert [p.error_delay(a) for a in (1, 2, 6)] == [1.0, 2.0, 5.0]
    assert RetryPolicy(strategy="exponential").error_delay(2) == 4.0
    assert RetryPolicy(strategy="fixed").error_delay(3) == 1.0
    assert p.should_retry(3) and not p.should_retry(4)


def test_classify():
    assert RetryPolicy.classify(RateLimitedError("x")) == RATE_LIMITED
    assert RetryPolicy.classify(ResponseTooLargeError("x")) == TOO_MANY_LOGS
    assert RetryPolicy.classify(RuntimeError("HTTP 429")) == RATE_LIMITED
    assert RetryPolicy.classify(RuntimeError("Log response size exceeded")) == TOO_MANY_LOGS
    assert RetryPolicy.classify(RuntimeError("boom")) == OTHER


@pytest.mark.asyncio
async def test_start_beyond_height_is_rejected(store):
    d, _ = _driver(FakeChain(height=10), store)
    with pytest.raises(InvalidRangeError):
        await Backfiller(d, batch_size=10).run(11)


@pytest.mark.asyncio
async def test_unreachable_chain_is_fatal(store):
    d, _ = _driver(FakeChain(unavailable=True), store)
    with pytest.raises(ChainUnavailableError):
        await Backfiller(d, batch_size=10).run(1)


@pytest.mark.asyncio
async def test_empty_configuration_is_rejected(store):
    chain = FakeChain()
    with pytest.raises(ConfigurationError):
        await Backfiller(BackfillDriver(chain, store, [], [TRANSFER]), batch_size=10).run(1)
    with pytest.raises(ConfigurationError):
        await Backfiller(BackfillDriver(chain, store, [target()], []), batch_size=10).run(1)
    assert chain.calls == []


@pytest.mark.asyncio
async def test_contract_start_block_and_event_restriction(store):
    chain = FakeChain(height=100)
    contracts = [target(TOKEN, start_block=60), target(OTHER_TOKEN, events=("approval",))]
    d, _ = _driver(chain, store, contracts=contracts, events=[TRANSFER, APPROVAL])
    assert [(c.address, e.name) for c, e in d.pairs()] == [
        (TOKEN, "Transfer"), (TOKEN, "Approval"), (OTHER_TOKEN, "Approval"),
    ]
    reports = await d.process_batch(1, 50)
    assert [(r.contract, r.event) for r in reports] == [(OTHER_TOKEN, "Approval")]
    reports = await d.process_batch(51, 100)
    assert [(r.from_block, r.to_block) for r in reports] == [(60, 100), (60, 100), (51, 100)]


@pytest.mark.asyncio
async def test_undecodable_logs_are_counted(store):
    bad = EventLog(address=TOKEN, topics=(TRANSFER.topic0,), data_hex="0x", block_number=5, tx_hash="0x" + "cd" * 32)
    chain = FakeChain(height=10, logs=[bad, transfer_log(6)])
    d, _ = _driver(chain, store)
    rep = await d.process_unit(TOKEN, TRANSFER, 1, 10)
    assert rep.ok and rep.logs == 2 and rep.inserted == 1
    assert d.stats.total.errors == 1


def test_ingest_logs_skips_duplicates(store):
    stats = IngestStats()
    logs = [transfer_log(1), transfer_log(1), transfer_log(2)]
    assert ingest_logs(store, TRANSFER, logs, stats) == 2
    assert (stats.logs, stats.processed, stats.duplicates) == (3, 2, 1)


@pytest.mark.asyncio
async def test_manifest_records_units_and_gaps(store, tmp_path):
    path = str(tmp_path / "runs" / "m.jsonl")
    chain = FakeChain(height=30)
    chain.fail(11, 20, *[RpcError("down") for _ in range(2)])
    d, _ = _driver(chain, store, policy=RetryPolicy(max_retries=1), manifest=JSONLManifest(path))
    await Backfiller(d, batch_size=10).run(1)

    recs = JSONLManifest.load(path)
    assert [(r.from_block, r.to_block, r.status) for r in recs] == [
        (1, 10, "done"), (11, 20, "failed"), (21, 30, "done"),
    ]
    assert recs[1].attempts == 2 and recs[1].error
    assert manifest_gaps(recs, 1, 30) == {(TOKEN, "Transfer"): [(11, 20)]}
    assert manifest_gaps(recs[:1], 1, 10) == {}


def test_manifest_load_reports_bad_lines(tmp_path):
    p = tmp_path / "bad.jsonl"
    p.write_text('{"from_block": 1, "to_block": 2}\nnot json\n')
    with pytest.raises(ValueError, match=":2:"):
        JSONLManifest.load(str(p))


@pytest.mark.asyncio
@pytest.mark.parametrize("structured", [False, True])
async def test_diagnostics_on_every_path_with_logging_configured(store, structured):
    setup_logging("debug", structured=structured)
    chain = FakeChain(height=40, logs=[transfer_log(5), transfer_log(5), transfer_log(30)])
    chain.fail(1, 20, ResponseTooLargeError("too many logs"))
    chain.fail(1, 10, RateLimitedError("429"))
    chain.fail(11, 20, RpcError("internal error"))
    chain.fail(40, 40, ResponseTooLargeError("too many logs"))
    d, sleeps = _driver(chain, store, policy=RetryPolicy(max_retries=1))
    await Backfiller(d, batch_size=20).run(1, 39)
    rep = await d.process_unit(TOKEN, TRANSFER, 40, 40)

    assert rep.failed_ranges == [(40, 40)]
    assert sleeps.delays == [2.0, 1.0]
    total = d.stats.total
    assert (total.processed, total.duplicates, total.split_count) == (2, 1, 1)
    assert d.stats.batches == 3
    bad = LogRecord(contract_address=None, transaction_hash=tx_hash(7), block_number=7)
    assert store.insert(bad, "Transfer", total) is InsertOutcome.ERROR
    assert total.errors == 1
    assert store.count("Transfer") == 2

    w = LiveWatcher(chain, store, [target()], [TRANSFER, APPROVAL])
    assert len(w.start()) == 2
    await chain.push([transfer_log(30), transfer_log(41)])
    chain.subs[0]["on_error"](RuntimeError("filter not found"))
    w.stop()
    assert store.count("Transfer") == 3


@pytest.mark.asyncio
async def test_ingest_leaves_the_event_loop_free(store):
    chain = FakeChain(height=10, logs=[transfer_log(b, i) for b in range(1, 11) for i in range(50)])
    d, _ = _driver(chain, store)
    ticks, done = 0, False

    async def ticker():
        nonlocal ticks
        while not done:
            ticks += 1
            await asyncio.sleep(0)

    task = asyncio.create_task(ticker())
    rep = await d.process_unit(TOKEN, TRANSFER, 1, 10)
    done = True
    await task
    assert rep.inserted == 500
    assert ticks > 1
