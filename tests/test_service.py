"""Tests for LedgerService, the facade used by report handlers."""

from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from branch_ledger.errors import TransientStoreError, UnknownBranch
from branch_ledger.events.types import EventType
from branch_ledger.service import LedgerService
from branch_ledger.stores.memory import MemoryLedgerStore

from conftest import make_report


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def published_service(report_store, ledger_store, registry, locks, clock, publisher):
    return LedgerService(
        report_store, ledger_store, registry, locks=locks, clock=clock, publisher=publisher
    )


def published_types(publisher):
    return [call.args[0].event_type for call in publisher.publish.call_args_list]


class TestWalkthrough:
    """The end-to-end branch scenario."""

    @pytest.mark.asyncio
    async def test_submit_reset_submit_rebuild(self, service, submit, clock):
        """Test totals through two submissions, a reset, a submission and a rebuild."""
        _, total = await submit("B1", cash=100, electronic=50, expense=20)
        assert total == Decimal("130.00")

        clock.advance(minutes=5)
        _, total = await submit("B1", cash=40, electronic=10, delivery={"hangry": 5})
        assert total == Decimal("185.00")

        reset_at = clock.advance(hours=1)
        await service.reset("B1")
        ledger = await service.get_ledger("B1")
        assert ledger.cumulative_total == Decimal("0.00")
        assert ledger.last_reset_at == reset_at

        clock.advance(minutes=1)
        _, total = await submit("B1", cash=20)
        assert total == Decimal("20.00")

        result = await service.rebuild_all()
        assert result.totals["B1"] == Decimal("20.00")
        assert (await service.get_ledger("B1")).cumulative_total == Decimal("20.00")


class TestReportHooks:
    """Tests for on_report_created/updated/deleted."""

    @pytest.mark.asyncio
    async def test_update_reflects_new_amounts(self, service, submit, report_store):
        """Test editing monetary fields updates the total."""
        report, _ = await submit("B1", cash=10)
        edited = replace(report, cash=Decimal("25"))
        await report_store.save(edited)

        totals = await service.on_report_updated(report, edited)

        assert totals == {"B1": Decimal("25.00")}

    @pytest.mark.asyncio
    async def test_branch_move_recalculates_both(self, service, submit, report_store):
        """Test moving a report between branches updates old and new branch."""
        await submit("B1", cash=5)
        report, _ = await submit("B1", cash=10)
        await submit("B2", cash=1)
        moved = replace(report, branch_id="B2")
        await report_store.save(moved)

        totals = await service.on_report_updated(report, moved)

        assert totals == {"B1": Decimal("5.00"), "B2": Decimal("11.00")}

    @pytest.mark.asyncio
    async def test_branch_move_from_closed_branch_updates_destination(
        self, service, submit, report_store, ledger_store, registry
    ):
        """Test a failing source branch still lets the destination recalculate."""
        report, _ = await submit("B1", cash=10)
        moved = replace(report, branch_id="B2")
        await report_store.save(moved)
        registry.deactivate("B1")

        with pytest.raises(UnknownBranch) as exc_info:
            await service.on_report_updated(report, moved)

        assert exc_info.value.branch_id == "B1"
        assert (await ledger_store.get("B2")).cumulative_total == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_update_requires_same_report(self, service):
        """Test before/after must share the report id."""
        with pytest.raises(ValueError):
            await service.on_report_updated(make_report("B1"), make_report("B1"))

    @pytest.mark.asyncio
    async def test_delete(self, service, submit, report_store):
        """Test deleting a report removes its contribution."""
        await submit("B1", cash=10)
        report, _ = await submit("B1", cash=3, electronic=2)
        await report_store.delete(report.report_id)

        assert await service.on_report_deleted(report) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_unknown_branch_propagates(self, service, report_store, clock):
        """Test a report for an unknown branch fails the handler."""
        report = make_report("NOPE", cash=1, created_at=clock())
        await report_store.save(report)

        with pytest.raises(UnknownBranch):
            await service.on_report_created(report)

    @pytest.mark.asyncio
    async def test_events_published(self, published_service, report_store, clock, publisher):
        """Test report and ledger events reach the publisher."""
        report = make_report("B1", cash=4, created_at=clock())
        await report_store.save(report)

        await published_service.on_report_created(report)

        assert published_types(publisher) == [
            EventType.LEDGER_RECALCULATED,
            EventType.REPORT_CREATED,
        ]


class TestErrorPropagation:
    """Failures are surfaced, published and never swallowed."""

    @pytest.mark.asyncio
    async def test_store_failure_fails_the_handler(self, registry, clock, publisher):
        """Test a transient store failure propagates and emits an error event."""
        reports = AsyncMock()
        reports.list_for_branch = AsyncMock(side_effect=TransientStoreError("db down"))
        service = LedgerService(
            reports, MemoryLedgerStore(), registry, clock=clock, publisher=publisher
        )

        with pytest.raises(TransientStoreError):
            await service.on_report_created(make_report("B1", cash=1, created_at=clock()))

        assert published_types(publisher) == [EventType.ERROR]
        event = publisher.publish.call_args.args[0]
        assert event.branch_id == "B1"
        assert event.data["details"] == {"operation": "report_created", "retryable": True}

    @pytest.mark.asyncio
    async def test_heals_by_recalculating_again(self, registry, clock, report_store):
        """Test a retried recalculation repairs the ledger after a failure."""
        ledgers = MemoryLedgerStore()
        service = LedgerService(report_store, ledgers, registry, clock=clock)
        report = make_report("B1", cash=8, created_at=clock())
        await report_store.save(report)
        original_write = ledgers.write_total
        ledgers.write_total = AsyncMock(side_effect=TransientStoreError("timeout"))

        with pytest.raises(TransientStoreError):
            await service.on_report_created(report)

        ledgers.write_total = original_write
        assert await service.recalculate("B1") == Decimal("8.00")


class TestQueries:
    """Tests for get_ledger, get_ledgers and overview."""

    @pytest.mark.asyncio
    async def test_get_ledger_is_fresh(self, service, report_store, ledger_store, clock):
        """Test get_ledger reflects reports saved without a hook call."""
        await report_store.save(make_report("B1", cash=6, created_at=clock()))

        ledger = await service.get_ledger("B1")

        assert ledger.cumulative_total == Decimal("6.00")

    @pytest.mark.asyncio
    async def test_get_ledger_stale_read(self, service, report_store, clock):
        """Test fresh=False returns the stored row or an empty ledger."""
        await report_store.save(make_report("B1", cash=6, created_at=clock()))

        ledger = await service.get_ledger("B1", fresh=False)

        assert ledger.cumulative_total == Decimal("0.00")
        assert ledger.last_reset_at is None

    @pytest.mark.asyncio
    async def test_get_ledgers_keeps_order(self, service, submit):
        """Test ledgers come back in the requested order."""
        await submit("B1", cash=1)
        await submit("B2", cash=2)

        ledgers = await service.get_ledgers(["B2", "B1"])

        assert [(ledger.branch_id, ledger.cumulative_total) for ledger in ledgers] == [
            ("B2", Decimal("2.00")),
            ("B1", Decimal("1.00")),
        ]

    @pytest.mark.asyncio
    async def test_get_ledgers_unknown_branch(self, service):
        """Test one unknown branch fails the whole query."""
        with pytest.raises(UnknownBranch):
            await service.get_ledgers(["B1", "NOPE"])

    @pytest.mark.asyncio
    async def test_get_ledgers_attempts_every_branch(
        self, service, ledger_store, report_store, clock
    ):
        """Test every branch is recalculated and the first failure in request order is raised."""
        await report_store.save(make_report("B1", cash=3, created_at=clock()))
        await report_store.save(make_report("B2", cash=4, created_at=clock()))

        with pytest.raises(UnknownBranch) as exc_info:
            await service.get_ledgers(["CLOSED", "B1", "NOPE", "B2"])

        assert exc_info.value.branch_id == "CLOSED"
        assert (await ledger_store.get("B1")).cumulative_total == Decimal("3.00")
        assert (await ledger_store.get("B2")).cumulative_total == Decimal("4.00")

    @pytest.mark.asyncio
    async def test_get_ledgers_stored_rows_in_one_read(self, service, submit, ledger_store):
        """Test stored reads fetch all rows together and fill in missing branches."""
        await submit("B2", cash=2)
        ledger_store.get = AsyncMock(side_effect=AssertionError("per-branch read"))

        ledgers = await service.get_ledgers(["B1", "B2"], fresh=False)

        assert [(ledger.branch_id, ledger.cumulative_total) for ledger in ledgers] == [
            ("B1", Decimal("0.00")),
            ("B2", Decimal("2.00")),
        ]
        with pytest.raises(UnknownBranch):
            await service.get_ledgers(["B1", "NOPE"], fresh=False)

    @pytest.mark.asyncio
    async def test_overview_grand_total(self, service, submit):
        """Test overview lists active branches with a grand total."""
        await submit("B1", cash=10)
        await submit("B2", cash=2, expense=5)

        overview = await service.overview()

        assert [ledger.branch_id for ledger in overview.ledgers] == ["B1", "B2"]
        assert overview.grand_total == Decimal("7.00")
