"""Entry point used by report mutation handlers and admin tooling."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from branch_ledger.checkpoint import CheckpointManager
from branch_ledger.contribution import contribution
from branch_ledger.errors import LedgerError
from branch_ledger.events.types import EventType, error_event, report_changed
from branch_ledger.locks import BranchLockManager
from branch_ledger.models import (
    BranchLedger,
    BranchSummary,
    LedgerOverview,
    RebuildResult,
    ReportRecord,
)
from branch_ledger.recalculation import RecalculationEngine, utc_now
from branch_ledger.stores.base import BranchRegistry, LedgerStore, ReportStore
from branch_ledger.summary import SummaryReader

logger = structlog.get_logger(__name__)


class LedgerService:
    """Keeps branch ledgers consistent with report history.

    Report handlers persist the report first and then await the matching
    ``on_report_*`` hook before answering their caller. Any error raised
    here means the ledger may lag the report store; calling
    :meth:`recalculate` again (it is idempotent) heals it.

    Usage:
        service = LedgerService(reports, ledgers, registry)
        await report_store.save(report)
        total = await service.on_report_created(report)
    """

    def __init__(
        self,
        reports: ReportStore,
        ledgers: LedgerStore,
        registry: BranchRegistry,
        locks: BranchLockManager | None = None,
        clock: Callable[[], datetime] = utc_now,
        publisher: Any = None,
        timezone: str | None = None,
        **engine_options: Any,
    ):
        self.publisher = publisher
        self.engine = RecalculationEngine(
            reports,
            ledgers,
            registry,
            locks=locks,
            clock=clock,
            publisher=publisher,
            **engine_options,
        )
        self.checkpoints = CheckpointManager(self.engine)
        self.summaries = SummaryReader(self.engine, timezone=timezone)

    @asynccontextmanager
    async def _reporting_errors(
        self, operation: str, branch_id: str | None = None
    ) -> AsyncIterator[None]:
        """Log and publish failures, then let them propagate."""
        try:
            yield
        except LedgerError as e:
            logger.warning(
                "ledger_operation_failed",
                operation=operation,
                branch_id=e.branch_id or branch_id,
                error=str(e),
                error_type=type(e).__name__,
                retryable=e.retryable,
            )
            self._publish(
                error_event(
                    str(e),
                    branch_id=e.branch_id or branch_id,
                    details={"operation": operation, "retryable": e.retryable},
                )
            )
            raise
        except Exception as e:
            logger.exception("ledger_operation_error", operation=operation, branch_id=branch_id)
            self._publish(
                error_event(str(e), branch_id=branch_id, details={"operation": operation})
            )
            raise

    def _publish(self, event: Any) -> None:
        if self.publisher is not None:
            self.publisher.publish(event)

    # === Report mutation hooks ===

    async def on_report_created(self, report: ReportRecord) -> Decimal:
        """Recalculate the report's branch after a new report was stored."""
        async with self._reporting_errors("report_created", report.branch_id):
            total = await self.engine.recalculate(report.branch_id)
        self._publish(
            report_changed(
                EventType.REPORT_CREATED, report.branch_id, report.report_id, contribution(report)
            )
        )
        return total

    async def on_report_updated(
        self, before: ReportRecord, after: ReportRecord
    ) -> dict[str, Decimal]:
        """Recalculate after an edit; a branch move recalculates both branches.

        Returns the new total of every affected branch.
        """
        if before.report_id != after.report_id:
            raise ValueError("before and after must describe the same report")

        affected = [before.branch_id]
        if after.branch_id != before.branch_id:
            affected.append(after.branch_id)
            logger.info(
                "report_moved_between_branches",
                report_id=after.report_id,
                from_branch=before.branch_id,
                to_branch=after.branch_id,
            )

        totals: dict[str, Decimal] = {}
        errors: list[Exception] = []
        for branch_id in affected:
            try:
                async with self._reporting_errors("report_updated", branch_id):
                    totals[branch_id] = await self.engine.recalculate(branch_id)
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]

        self._publish(
            report_changed(
                EventType.REPORT_UPDATED, after.branch_id, after.report_id, contribution(after)
            )
        )
        return totals

    async def on_report_deleted(self, report: ReportRecord) -> Decimal:
        """Recalculate the report's branch after the report was removed."""
        async with self._reporting_errors("report_deleted", report.branch_id):
            total = await self.engine.recalculate(report.branch_id)
        self._publish(
            report_changed(
                EventType.REPORT_DELETED, report.branch_id, report.report_id, contribution(report)
            )
        )
        return total

    # === Queries ===

    async def recalculate(self, branch_id: str) -> Decimal:
        async with self._reporting_errors("recalculate", branch_id):
            return await self.engine.recalculate(branch_id)

    async def get_ledger(self, branch_id: str, fresh: bool = True) -> BranchLedger:
        """Return the branch ledger, recalculating first unless ``fresh`` is False."""
        async with self._reporting_errors("get_ledger", branch_id):
            await self.engine.ensure_active(branch_id)
            if fresh:
                async with self.engine.locks.hold(branch_id):
                    await self.engine.recalculate_locked(branch_id)
                    ledger = await self.engine.ledgers.get(branch_id)
            else:
                ledger = await self.engine.ledgers.get(branch_id)
        return ledger or BranchLedger(branch_id=branch_id)

    async def get_ledgers(self, branch_ids: list[str], fresh: bool = True) -> list[BranchLedger]:
        """Return ledgers in the order requested.

        Fresh reads recalculate the branches in parallel and every branch is
        attempted; the first failure in request order is raised afterwards.
        Stored reads check the branches and then fetch all rows at once.
        """
        if fresh:
            outcomes = await asyncio.gather(
                *(self.get_ledger(branch_id) for branch_id in branch_ids),
                return_exceptions=True,
            )
            return _first_error_or(list(outcomes))

        async with self._reporting_errors("get_ledgers"):
            checks = await asyncio.gather(
                *(self.engine.ensure_active(branch_id) for branch_id in branch_ids),
                return_exceptions=True,
            )
            _first_error_or(list(checks))
            stored = {
                ledger.branch_id: ledger
                for ledger in await self.engine.ledgers.get_many(branch_ids)
            }
        return [stored.get(branch_id) or BranchLedger(branch_id=branch_id)
                for branch_id in branch_ids]

    async def overview(self, fresh: bool = True) -> LedgerOverview:
        """Ledgers of every active branch with an informational grand total."""
        async with self._reporting_errors("overview"):
            branch_ids = await self.engine.registry.list_active()
        return LedgerOverview(ledgers=await self.get_ledgers(branch_ids, fresh=fresh))

    async def summary(self, branch_id: str, as_of: datetime | None = None) -> BranchSummary:
        async with self._reporting_errors("summary", branch_id):
            return await self.summaries.summary(branch_id, as_of)

    # === Administration ===

    async def reset(self, branch_id: str | None = None) -> list[BranchLedger]:
        """Reset one branch, or all branches when ``branch_id`` is None."""
        async with self._reporting_errors("reset", branch_id):
            return await self.checkpoints.reset(branch_id)

    async def clear_checkpoint(self, branch_id: str) -> Decimal:
        async with self._reporting_errors("clear_checkpoint", branch_id):
            return await self.checkpoints.clear_checkpoint(branch_id)

    async def rebuild_all(self) -> RebuildResult:
        async with self._reporting_errors("rebuild_all"):
            result = await self.engine.rebuild_all()
        for branch_id, error in result.failures.items():
            self._publish(
                error_event(str(error), branch_id=branch_id, details={"operation": "rebuild_all"})
            )
        return result


def _first_error_or(outcomes: list[Any]) -> list[Any]:
    """Raise the first exception among gathered outcomes, else return them."""
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return outcomes
