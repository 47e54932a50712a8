"""
Unit tests for the batch processor.

Tests cover:
- Sequential insert path: transform, duplicate check, insert
- Bulk insert path: intra-batch repeats, per-row rejections, whole-call failures
- Dry run
- Bounded concurrency across batches
- Memory ceiling and deadline halts
- Progress, audit and metrics side effects
- Isolation of unexpected per-record errors
"""

import asyncio
import dataclasses
import time

import pytest

from batchmigrate.audit import AuditLogger
from batchmigrate.batch_processor import (
    ITEM_INSERT_FAILED,
    ITEM_PROCESSING_FAILED,
    BatchProcessor,
    UndoLog,
    chunk,
)
from batchmigrate.exceptions import MemoryLimitExceededError, MigrationTimeoutError
from batchmigrate.governor import ResourceGovernor
from batchmigrate.mappings import CANDLE_MAPPING, TRADE_MAPPING
from batchmigrate.models import (
    AuditAction,
    BulkInsertResult,
    InsertResult,
    MigrationConfig,
    MigrationPhase,
    MigrationRun,
)
from batchmigrate.observability import MockTracer
from batchmigrate.stores import InMemoryAuditSink, InMemoryDestinationStore
from tests.fixtures import (
    FakeMemorySampler,
    make_candles,
    make_malformed_trade,
    make_trade,
    make_trades,
)


def _run(**config) -> MigrationRun:
    run = MigrationRun.create("TRADE_DATA", MigrationConfig(**config))
    run.phase = MigrationPhase.MIGRATING_DATA
    return run


def _processor(store, governor, **kwargs) -> BatchProcessor:
    kwargs.setdefault("enable_tracing", False)
    return BatchProcessor(store, TRADE_MAPPING, governor, **kwargs)


class SlowTradeStore(InMemoryDestinationStore):
    """Trade store that records how many inserts run at the same time."""

    def __init__(self, delay: float = 0.005) -> None:
        super().__init__(TRADE_MAPPING, enable_tracing=False)
        self._delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def insert_one(self, row):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay)
            return await super().insert_one(row)
        finally:
            self.in_flight -= 1


class ShortCountStore(InMemoryDestinationStore):
    """Bulk store whose insert reports fewer affected rows than it was given."""

    def __init__(self) -> None:
        super().__init__(TRADE_MAPPING, bulk_insert=True, enable_tracing=False)

    async def insert_many(self, rows):
        return BulkInsertResult(affected=len(rows) - 1)


class TestChunk:
    """Tests for chunk()."""

    def test_chunks(self):
        """Records are split into consecutive slices; the last may be short."""
        assert [list(c) for c in chunk(list(range(7)), 3)] == [[0, 1, 2], [3, 4, 5], [6]]

    def test_empty(self):
        """No records means no batches."""
        assert list(chunk([], 3)) == []


class TestUndoLog:
    """Tests for UndoLog."""

    def test_add_and_clear(self):
        """Keys are kept in insertion order until cleared."""
        log = UndoLog()
        log.add(("a",))
        log.extend([("b",), ("c",)])
        assert log.keys == (("a",), ("b",), ("c",))
        assert len(log) == 3
        log.clear()
        assert not log


class TestSequentialPath:
    """Tests for the one-at-a-time insert path."""

    @pytest.mark.asyncio
    async def test_inserts_every_record(self, trade_store, governor):
        """Valid records are inserted and recorded in the undo log."""
        run = _run(batch_size=4)
        undo_log = UndoLog()

        outcomes = await _processor(trade_store, governor).process_all(
            run, "trades", make_trades(10), undo_log=undo_log
        )

        assert len(outcomes) == 3
        assert sum(o.succeeded for o in outcomes) == 10
        assert len(trade_store.rows) == 10
        assert len(undo_log) == 10
        assert run.processed == 10
        assert all(not o.bulk for o in outcomes)

    @pytest.mark.asyncio
    async def test_batch_ids(self, trade_store, governor):
        """Batches are identified by group and position."""
        outcomes = await _processor(trade_store, governor).process_all(
            _run(batch_size=5, max_concurrency=1), "trades", make_trades(10)
        )
        assert [o.batch_id for o in outcomes] == ["trades#1", "trades#2"]

    @pytest.mark.asyncio
    async def test_malformed_record_does_not_abort_siblings(self, trade_store, governor):
        """A malformed record fails alone; its batch carries on."""
        records = make_trades(4)
        records.insert(2, make_malformed_trade())
        run = _run(batch_size=10)

        outcomes = await _processor(trade_store, governor).process_all(run, "trades", records)

        outcome = outcomes[0]
        assert outcome.processed == 5
        assert outcome.succeeded == 4
        assert outcome.failed == 1
        assert outcome.errors[0].item_id == "bad-0"
        assert outcome.errors[0].error_code == "ITEM_TRANSFORM_FAILED"

    @pytest.mark.asyncio
    async def test_skips_existing_rows(self, trade_store, governor):
        """Rows already in the destination are counted as duplicates."""
        records = make_trades(5)
        await trade_store.seed([TRADE_MAPPING.transform(r) for r in records[:2]])
        undo_log = UndoLog()

        outcomes = await _processor(trade_store, governor).process_all(
            _run(), "trades", records, undo_log=undo_log
        )

        assert outcomes[0].duplicates == 2
        assert outcomes[0].succeeded == 3
        assert len(undo_log) == 3

    @pytest.mark.asyncio
    async def test_without_duplicate_skipping_conflicts_fail(self, trade_store, governor):
        """With skipping disabled, existing rows fail at insert time."""
        records = make_trades(3)
        await trade_store.seed([TRADE_MAPPING.transform(records[0])])

        outcomes = await _processor(trade_store, governor).process_all(
            _run(skip_duplicates=False), "trades", records
        )

        assert outcomes[0].failed == 1
        assert outcomes[0].duplicates == 0
        assert outcomes[0].errors[0].error_code == ITEM_INSERT_FAILED

    @pytest.mark.asyncio
    async def test_rejected_insert_fails_item(self, trade_store, governor):
        """A store rejection fails only that item."""
        trade_store.reject = lambda row: "check constraint" if row.quantity == 2.0 else None

        outcomes = await _processor(trade_store, governor).process_all(
            _run(), "trades", make_trades(3)
        )

        assert outcomes[0].succeeded == 2
        assert outcomes[0].failed == 1
        assert outcomes[0].errors[0].message == "check constraint"

    @pytest.mark.asyncio
    async def test_insert_exception_fails_item(self, governor):
        """An insert that raises fails only that item."""

        class FlakyStore(InMemoryDestinationStore):
            async def insert_one(self, row):
                if row.quantity == 1.0:
                    raise ConnectionResetError("connection reset")
                return await super().insert_one(row)

        store = FlakyStore(TRADE_MAPPING, enable_tracing=False)
        outcomes = await _processor(store, governor).process_all(_run(), "trades", make_trades(3))

        assert outcomes[0].failed == 1
        assert outcomes[0].succeeded == 2
        assert "connection reset" in outcomes[0].errors[0].message

    @pytest.mark.asyncio
    async def test_lookup_failure_still_inserts(self, trade_store, governor):
        """A failed duplicate lookup records an error and inserts anyway."""
        trade_store.lookup_error = TimeoutError("slow")

        outcomes = await _processor(trade_store, governor).process_all(
            _run(), "trades", make_trades(2)
        )

        assert outcomes[0].succeeded == 2
        assert outcomes[0].failed == 0
        assert len(outcomes[0].errors) == 2

    @pytest.mark.asyncio
    async def test_malformed_insert_result_fails_item(self, governor):
        """An unexpected error while handling one record fails only that record."""

        class GarbledStore(InMemoryDestinationStore):
            async def insert_one(self, row):
                if row.quantity == 2.0:
                    return None
                return await super().insert_one(row)

        store = GarbledStore(TRADE_MAPPING, enable_tracing=False)
        undo_log = UndoLog()

        outcomes = await _processor(store, governor).process_all(
            _run(), "trades", make_trades(4), undo_log=undo_log
        )

        assert outcomes[0].succeeded == 3
        assert outcomes[0].failed == 1
        assert outcomes[0].errors[0].error_code == ITEM_PROCESSING_FAILED
        assert len(undo_log) == 3


class TestUnexpectedItemErrors:
    """Records failing with errors of any type stay isolated."""

    @staticmethod
    def _exploding_mapping(bad_id: str):
        def converter(raw):
            if raw["id"] == bad_id:
                raise RuntimeError("converter crashed")
            return TRADE_MAPPING.converter(raw)

        return dataclasses.replace(TRADE_MAPPING, converter=converter)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bulk", [False, True])
    async def test_converter_crash_fails_one_item(self, governor, bulk):
        """A converter raising RuntimeError fails its record and nothing else."""
        store = InMemoryDestinationStore(TRADE_MAPPING, bulk_insert=bulk, enable_tracing=False)
        processor = BatchProcessor(
            store, self._exploding_mapping("trade-6"), governor, enable_tracing=False
        )
        run = _run(batch_size=5, max_concurrency=2)

        outcomes = await processor.process_all(run, "trades", make_trades(20))

        assert len(outcomes) == 4
        assert sum(o.failed for o in outcomes) == 1
        assert sum(o.succeeded for o in outcomes) == 19
        assert len(store.rows) == 19
        assert run.processed == 20
        (error,) = [e for o in outcomes for e in o.errors]
        assert error.error_code == "ITEM_TRANSFORM_FAILED"
        assert error.item_id == "trade-6"

    @pytest.mark.asyncio
    async def test_candle_time_out_of_range(self, governor):
        """A candle with an unrepresentable timestamp fails alone."""
        store = InMemoryDestinationStore(CANDLE_MAPPING, enable_tracing=False)
        processor = BatchProcessor(store, CANDLE_MAPPING, governor, enable_tracing=False)
        records = make_candles(20)
        records[7]["timestamp"] = 1e20
        run = MigrationRun.create("MARKET_DATA", MigrationConfig(batch_size=5))
        run.phase = MigrationPhase.MIGRATING_DATA

        outcomes = await processor.process_all(run, "BTC-USD:1m", records)

        assert sum(o.failed for o in outcomes) == 1
        assert sum(o.succeeded for o in outcomes) == 19
        assert len(store.rows) == 19
        (failing,) = [o for o in outcomes if o.failed]
        assert failing.batch_id == "BTC-USD:1m#2"
        assert failing.errors[0].error_code == "ITEM_TRANSFORM_FAILED"


class TestBulkPath:
    """Tests for the bulk insert path."""

    @pytest.mark.asyncio
    async def test_uses_bulk_insert_when_offered(self, bulk_trade_store, governor):
        """Stores offering bulk insert get one call per batch."""
        undo_log = UndoLog()
        outcomes = await _processor(bulk_trade_store, governor).process_all(
            _run(batch_size=5), "trades", make_trades(10), undo_log=undo_log
        )

        assert all(o.bulk for o in outcomes)
        assert bulk_trade_store.insert_many_calls == 2
        assert bulk_trade_store.insert_calls == 0
        assert len(undo_log) == 10

    @pytest.mark.asyncio
    async def test_disabled_by_configuration(self, bulk_trade_store, governor):
        """use_bulk_insert=False forces the sequential path."""
        outcomes = await _processor(bulk_trade_store, governor).process_all(
            _run(use_bulk_insert=False), "trades", make_trades(3)
        )
        assert not outcomes[0].bulk
        assert bulk_trade_store.insert_calls == 3

    @pytest.mark.asyncio
    async def test_repeats_within_batch_are_duplicates(self, bulk_trade_store, governor):
        """A natural key repeated inside one batch is inserted once."""
        records = [make_trade(0), make_trade(0, id="again"), make_trade(1)]

        outcomes = await _processor(bulk_trade_store, governor).process_all(
            _run(), "trades", records
        )

        assert outcomes[0].succeeded == 2
        assert outcomes[0].duplicates == 1
        assert len(bulk_trade_store.rows) == 2

    @pytest.mark.asyncio
    async def test_rejected_rows_fail_individually(self, bulk_trade_store, governor):
        """Per-row rejections fail those rows and keep them out of the undo log."""
        bulk_trade_store.reject = lambda row: "bad price" if row.quantity == 2.0 else None
        undo_log = UndoLog()

        outcomes = await _processor(bulk_trade_store, governor).process_all(
            _run(), "trades", make_trades(3), undo_log=undo_log
        )

        assert outcomes[0].succeeded == 2
        assert outcomes[0].failed == 1
        assert outcomes[0].errors[0].item_id == "BTC-USD:sell:2.0:50001.0"
        assert len(undo_log) == 2

    @pytest.mark.asyncio
    async def test_whole_call_failure_fails_every_row(self, governor):
        """A bulk insert that raises fails every row of the batch."""

        class BrokenBulkStore(InMemoryDestinationStore):
            async def insert_many(self, rows):
                raise ConnectionError("pool exhausted")

        store = BrokenBulkStore(TRADE_MAPPING, bulk_insert=True, enable_tracing=False)
        undo_log = UndoLog()

        outcomes = await _processor(store, governor).process_all(
            _run(), "trades", make_trades(4), undo_log=undo_log
        )

        assert outcomes[0].failed == 4
        assert outcomes[0].succeeded == 0
        assert not undo_log

    @pytest.mark.asyncio
    async def test_short_affected_count_is_not_undone(self, governor):
        """When the store wrote fewer rows than accepted, none are trusted for undo."""
        store = ShortCountStore()
        undo_log = UndoLog()

        outcomes = await _processor(store, governor).process_all(
            _run(), "trades", make_trades(4), undo_log=undo_log
        )

        outcome = outcomes[0]
        assert outcome.succeeded == 3
        assert outcome.failed == 1
        assert outcome.processed == outcome.succeeded + outcome.failed + outcome.duplicates
        assert not undo_log


class TestDryRun:
    """Tests for dry runs."""

    @pytest.mark.asyncio
    async def test_no_writes(self, bulk_trade_store, governor):
        """Dry runs count every record as succeeded without touching the store."""
        outcomes = await _processor(bulk_trade_store, governor).process_all(
            _run(dry_run=True, batch_size=3), "trades", make_trades(7)
        )

        assert sum(o.succeeded for o in outcomes) == 7
        assert bulk_trade_store.write_calls == 0
        assert bulk_trade_store.rows == []
        assert all(not o.bulk for o in outcomes)


class TestConcurrency:
    """Tests for bounded batch concurrency."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrency(self, governor):
        """At most max_concurrency batches are in flight."""
        store = SlowTradeStore()

        outcomes = await _processor(store, governor).process_all(
            _run(batch_size=2, max_concurrency=3), "trades", make_trades(20)
        )

        assert len(outcomes) == 10
        assert 1 < store.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_single_worker_is_sequential(self, governor):
        """max_concurrency=1 processes batches one after another."""
        store = SlowTradeStore(delay=0.001)

        await _processor(store, governor).process_all(
            _run(batch_size=2, max_concurrency=1), "trades", make_trades(6)
        )

        assert store.max_in_flight == 1


class TestHalts:
    """Tests for memory and deadline halts."""

    @pytest.mark.asyncio
    async def test_memory_limit_stops_dispatch(self, trade_store):
        """Memory over the ceiling after a batch halts the group."""
        governor = ResourceGovernor(
            FakeMemorySampler(900.0),
            throttle_pause_ms=0,
            enable_tracing=False,
        )
        run = _run(batch_size=5, max_concurrency=1, memory_limit_mb=100)

        with pytest.raises(MemoryLimitExceededError) as exc_info:
            await _processor(trade_store, governor).process_all(run, "trades", make_trades(20))

        error = exc_info.value
        assert error.run_id == run.run_id
        assert len(error.outcomes) == 1
        assert run.processed == 5
        assert len(trade_store.rows) == 5

    @pytest.mark.asyncio
    async def test_expired_deadline_stops_dispatch(self, trade_store, governor):
        """No batch is dispatched after the deadline."""
        run = _run(batch_size=5)

        with pytest.raises(MigrationTimeoutError) as exc_info:
            await _processor(trade_store, governor).process_all(
                run, "trades", make_trades(10), deadline=time.monotonic() - 1
            )

        assert exc_info.value.outcomes == []
        assert trade_store.rows == []

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, trade_store):
        """Failures outside item processing are re-raised as is."""

        def broken_sampler() -> float:
            raise RuntimeError("sampler broken")

        governor = ResourceGovernor(broken_sampler, enable_tracing=False)

        with pytest.raises(RuntimeError, match="sampler broken"):
            await _processor(trade_store, governor).process_all(_run(), "trades", make_trades(2))


class TestSideEffects:
    """Tests for progress, audit, metrics and tracing side effects."""

    @pytest.mark.asyncio
    async def test_one_audit_entry_per_batch(self, trade_store, governor):
        """Every batch writes a BATCH_COMPLETED entry."""
        sink = InMemoryAuditSink()
        audit = AuditLogger(sink, enable_tracing=False)
        run = _run(batch_size=10)

        await _processor(trade_store, governor, audit=audit).process_all(
            run, "trades", make_trades(50)
        )

        batch_entries = [e for e in sink.entries if e.action == AuditAction.BATCH_COMPLETED]
        assert len(batch_entries) == 5
        assert {e.details["processed"] for e in batch_entries} == {10}

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, trade_store, governor, migration_metrics):
        """Batch durations and record outcomes reach the metrics."""
        records = make_trades(4) + [make_malformed_trade()]

        await _processor(trade_store, governor, metrics=migration_metrics).process_all(
            _run(batch_size=5), "trades", records
        )

        snapshot = migration_metrics.get_snapshot()
        assert snapshot.records_processed == {"succeeded": 4, "failed": 1}
        assert len(snapshot.batch_durations) == 1

    @pytest.mark.asyncio
    async def test_spans(self, trade_store, governor):
        """Groups and batches are traced."""
        tracer = MockTracer()

        await BatchProcessor(trade_store, TRADE_MAPPING, governor, tracer=tracer).process_all(
            _run(batch_size=2, max_concurrency=1), "trades", make_trades(4)
        )

        assert tracer.span_names.count("batchmigrate.batch_processor.process_all") == 1
        assert tracer.span_names.count("batchmigrate.batch_processor.process_batch") == 2

    @pytest.mark.asyncio
    async def test_empty_group(self, trade_store, governor):
        """An empty group yields no batches."""
        outcomes = await _processor(trade_store, governor).process_all(_run(), "trades", [])
        assert outcomes == []


class TestInsertResultHandling:
    """Tests for stores answering with explicit insert results."""

    @pytest.mark.asyncio
    async def test_unsuccessful_result_without_message(self, governor):
        """Rejections without a message get a generic one."""

        class SilentRejectStore(InMemoryDestinationStore):
            async def insert_one(self, row):
                return InsertResult(success=False)

        store = SilentRejectStore(TRADE_MAPPING, enable_tracing=False)
        outcomes = await _processor(store, governor).process_all(_run(), "trades", make_trades(1))

        assert outcomes[0].errors[0].message == "Insert rejected by destination store"
