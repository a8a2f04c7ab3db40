"""Tests for the recalculation engine and checkpoint manager."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from branch_ledger.checkpoint import CheckpointManager
from branch_ledger.errors import NumericOverflow, TransientStoreError, UnknownBranch
from branch_ledger.events.types import EventType
from branch_ledger.locks import BranchLockManager
from branch_ledger.recalculation import RecalculationEngine
from branch_ledger.stores.memory import MemoryLedgerStore, MemoryReportStore
from branch_ledger.stores.registry import StaticBranchRegistry

from conftest import make_report


@pytest.fixture
def engine(report_store, ledger_store, registry, locks, clock):
    return RecalculationEngine(report_store, ledger_store, registry, locks=locks, clock=clock)


@pytest.fixture
def checkpoints(engine):
    return CheckpointManager(engine)


class TestRecalculate:
    """Tests for RecalculationEngine.recalculate."""

    @pytest.mark.asyncio
    async def test_additive_over_reports(self, engine, report_store, ledger_store):
        """Test the total equals the sum of contributions."""
        await report_store.save(make_report("B1", cash=100, electronic=50, expense=20))
        await report_store.save(make_report("B1", cash=40, electronic=10, delivery={"hangry": 5}))
        await report_store.save(make_report("B2", cash=999))

        total = await engine.recalculate("B1")

        assert total == Decimal("185.00")
        ledger = await ledger_store.get("B1")
        assert ledger.cumulative_total == Decimal("185.00")
        assert ledger.last_reset_at is None

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, report_store):
        """Test two recalculations without mutations agree."""
        await report_store.save(make_report("B1", cash=12, expense=2))

        first = await engine.recalculate("B1")
        second = await engine.recalculate("B1")

        assert first == second == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_one_ledger_write_per_call(self, engine, report_store, ledger_store):
        """Test each recalculation performs exactly one ledger write."""
        await report_store.save(make_report("B1", cash=1))

        await engine.recalculate("B1")
        await engine.recalculate("B1")

        assert ledger_store.write_count == 2

    @pytest.mark.asyncio
    async def test_empty_branch_upserts_zero(self, engine, ledger_store):
        """Test a branch without reports gets a zero ledger row."""
        assert await ledger_store.get("B2") is None

        assert await engine.recalculate("B2") == Decimal("0.00")
        assert (await ledger_store.get("B2")).cumulative_total == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_records_recalculated_at(self, engine, ledger_store, clock):
        """Test last_recalculated_at bookkeeping."""
        await engine.recalculate("B1")
        assert (await ledger_store.get("B1")).last_recalculated_at == clock()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("branch_id", ["", "NOPE", "CLOSED"])
    async def test_unknown_branch(self, engine, ledger_store, branch_id):
        """Test unknown, empty and inactive branches are rejected without writes."""
        with pytest.raises(UnknownBranch) as exc_info:
            await engine.recalculate(branch_id)

        assert exc_info.value.retryable is False
        assert ledger_store.write_count == 0

    @pytest.mark.asyncio
    async def test_delete_removes_contribution(self, engine, report_store):
        """Test deleting a report subtracts its contribution."""
        keep = make_report("B1", cash=50)
        drop = make_report("B1", cash=30, electronic=5, expense=1)
        await report_store.save(keep)
        await report_store.save(drop)
        old_total = await engine.recalculate("B1")

        await report_store.delete(drop.report_id)
        new_total = await engine.recalculate("B1")

        assert new_total == old_total - Decimal("34.00")

    @pytest.mark.asyncio
    async def test_overflow_propagates(self, report_store, ledger_store, registry, clock):
        """Test NumericOverflow aborts the recalculation without writing."""
        engine = RecalculationEngine(
            report_store, ledger_store, registry, clock=clock, max_abs_total=Decimal("100")
        )
        await report_store.save(make_report("B1", cash=101))

        with pytest.raises(NumericOverflow):
            await engine.recalculate("B1")

        assert await ledger_store.get("B1") is None

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, ledger_store, registry, clock):
        """Test a failing report store surfaces as TransientStoreError."""
        reports = AsyncMock()
        reports.list_for_branch = AsyncMock(side_effect=TransientStoreError("db down"))
        engine = RecalculationEngine(reports, ledger_store, registry, clock=clock)

        with pytest.raises(TransientStoreError) as exc_info:
            await engine.recalculate("B1")

        assert exc_info.value.retryable is True
        assert await ledger_store.get("B1") is None

    @pytest.mark.asyncio
    async def test_publishes_recalculated_event(self, report_store, ledger_store, registry, clock):
        """Test a publisher receives the new total."""
        publisher = MagicMock()
        engine = RecalculationEngine(
            report_store, ledger_store, registry, clock=clock, publisher=publisher
        )
        await report_store.save(make_report("B1", cash=3))

        await engine.recalculate("B1")

        published = [call.args[0] for call in publisher.publish.call_args_list]
        assert [e.event_type for e in published] == [EventType.LEDGER_RECALCULATED]
        assert published[0].cumulative_total == Decimal("3.00")


class TestCheckpointRace:
    """Tests for the conditional ledger write guarding against stale totals."""

    @pytest.mark.asyncio
    async def test_reset_between_read_and_write_wins(self, registry, clock):
        """Test a reset landing mid-recalculation is never overwritten."""
        ledgers = MemoryLedgerStore()
        reports = MemoryReportStore([make_report("B1", cash=80, created_at=clock())])
        reset_at = clock() + timedelta(minutes=5)
        original_list = reports.list_for_branch
        calls = 0

        async def list_then_reset(branch_id, since=None):
            # Another process resets the branch after our read.
            nonlocal calls
            calls += 1
            result = await original_list(branch_id, since)
            if calls == 1:
                await ledgers.reset(branch_id, reset_at)
            return result

        reports.list_for_branch = list_then_reset
        engine = RecalculationEngine(reports, ledgers, registry, clock=clock)

        total = await engine.recalculate("B1")

        assert total == Decimal("0.00")
        ledger = await ledgers.get("B1")
        assert ledger.cumulative_total == Decimal("0.00")
        assert ledger.last_reset_at == reset_at
        assert calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, report_store, registry, clock):
        """Test a checkpoint that keeps moving raises a retryable error."""
        ledgers = MemoryLedgerStore()
        ledgers.write_total = AsyncMock(return_value=False)
        engine = RecalculationEngine(report_store, ledgers, registry, clock=clock, max_attempts=2)

        with pytest.raises(TransientStoreError, match="2 attempts"):
            await engine.recalculate("B1")

        assert ledgers.write_total.await_count == 2


class TestReset:
    """Tests for CheckpointManager.reset and the windowing rule."""

    @pytest.mark.asyncio
    async def test_reset_zeroes_and_sets_checkpoint(self, engine, checkpoints, report_store, clock):
        """Test reset zeroes the total and records the reset instant."""
        await report_store.save(make_report("B1", cash=10, created_at=clock()))
        await engine.recalculate("B1")
        reset_at = clock.advance(hours=1)

        [ledger] = await checkpoints.reset("B1")

        assert ledger.cumulative_total == Decimal("0.00")
        assert ledger.last_reset_at == reset_at

    @pytest.mark.asyncio
    async def test_reports_before_checkpoint_never_count(
        self, engine, checkpoints, report_store, clock
    ):
        """Test windowing: only reports at or after the reset count."""
        await report_store.save(make_report("B1", cash=500, created_at=clock()))
        reset_at = clock.advance(hours=1)
        await checkpoints.reset("B1")
        await report_store.save(make_report("B1", cash=7, created_at=reset_at))
        await report_store.save(
            make_report("B1", cash=3, created_at=reset_at + timedelta(seconds=1))
        )

        assert await engine.recalculate("B1") == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_reset_keeps_report_history(self, checkpoints, report_store, clock):
        """Test reset does not delete reports."""
        await report_store.save(make_report("B1", cash=10, created_at=clock()))
        clock.advance(hours=1)

        await checkpoints.reset("B1")

        assert len(await report_store.list_for_branch("B1")) == 1

    @pytest.mark.asyncio
    async def test_reset_unknown_branch(self, checkpoints):
        """Test resetting an unknown branch fails."""
        with pytest.raises(UnknownBranch):
            await checkpoints.reset("NOPE")

    @pytest.mark.asyncio
    async def test_reset_all(self, checkpoints, ledger_store, clock):
        """Test reset(None) covers active branches and existing rows."""
        await ledger_store.reset("LEGACY", datetime(2025, 1, 1, tzinfo=UTC))
        reset_at = clock.advance(days=1)

        ledgers = await checkpoints.reset(None)

        assert [ledger.branch_id for ledger in ledgers] == ["B1", "B2", "LEGACY"]
        assert {ledger.last_reset_at for ledger in ledgers} == {reset_at}

    @pytest.mark.asyncio
    async def test_clear_checkpoint_restores_full_history(
        self, engine, checkpoints, report_store, ledger_store, clock
    ):
        """Test the administrative path counts pre-reset reports again."""
        await report_store.save(make_report("B1", cash=40, created_at=clock()))
        clock.advance(hours=1)
        await checkpoints.reset("B1")
        assert await engine.recalculate("B1") == Decimal("0.00")

        total = await checkpoints.clear_checkpoint("B1")

        assert total == Decimal("40.00")
        assert (await ledger_store.get("B1")).last_reset_at is None


class TestRebuildAll:
    """Tests for RecalculationEngine.rebuild_all."""

    @pytest.mark.asyncio
    async def test_rebuilds_every_active_branch(self, engine, report_store, ledger_store):
        """Test all active branches are recalculated."""
        await report_store.save(make_report("B1", cash=5))
        await report_store.save(make_report("B2", cash=6))
        await report_store.save(make_report("CLOSED", cash=7))

        result = await engine.rebuild_all()

        assert result.ok
        assert result.totals == {"B1": Decimal("5.00"), "B2": Decimal("6.00")}
        assert await ledger_store.get("CLOSED") is None

    @pytest.mark.asyncio
    async def test_corrects_drift(self, engine, report_store, ledger_store, clock):
        """Test a tampered ledger is repaired."""
        await report_store.save(make_report("B1", cash=5))
        await engine.recalculate("B1")
        await ledger_store.write_total("B1", Decimal("999"), None, clock())

        await engine.rebuild_all()

        assert (await ledger_store.get("B1")).cumulative_total == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_per_branch(self, ledger_store, clock):
        """Test one failing branch does not stop the others."""
        reports = MemoryReportStore([make_report("B1", cash=1), make_report("B2", cash=2)])
        original_list = reports.list_for_branch

        async def flaky(branch_id, since=None):
            if branch_id == "B2":
                raise TransientStoreError("shard offline", branch_id="B2")
            return await original_list(branch_id, since)

        reports.list_for_branch = flaky
        engine = RecalculationEngine(
            reports,
            ledger_store,
            StaticBranchRegistry(active=["B1", "B2"]),
            locks=BranchLockManager(timeout=1.0),
            clock=clock,
        )

        result = await engine.rebuild_all()

        assert result.totals == {"B1": Decimal("1.00")}
        assert list(result.failures) == ["B2"]
        assert isinstance(result.failures["B2"], TransientStoreError)

    @pytest.mark.asyncio
    async def test_rebuild_leaves_post_reset_total(
        self, engine, checkpoints, report_store, clock
    ):
        """Test rebuild does not resurrect history before the checkpoint."""
        await report_store.save(make_report("B1", cash=100, created_at=clock()))
        clock.advance(minutes=1)
        await checkpoints.reset("B1")
        await report_store.save(make_report("B1", cash=20, created_at=clock.advance(minutes=1)))

        result = await engine.rebuild_all()

        assert result.totals["B1"] == Decimal("20.00")
