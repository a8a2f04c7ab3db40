"""Recomputes branch running totals from report history."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from functools import partial
from typing import Any

import structlog

from branch_ledger.config import get_settings
from branch_ledger.contribution import sum_contributions
from branch_ledger.errors import TransientStoreError, UnknownBranch
from branch_ledger.events.types import ledger_rebuilt, ledger_recalculated
from branch_ledger.locks import BranchLockManager
from branch_ledger.models import BranchLedger, RebuildResult, ReportRecord
from branch_ledger.stores.base import AtomicLedgerStore, BranchRegistry, LedgerStore, ReportStore

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class RecalculationEngine:
    """Owns every write of ``cumulative_total``.

    A recalculation reads the branch checkpoint, sums the contributions of
    all reports created at or after it, and stores the result. Read and
    write happen inside the branch's critical section, and the write is
    conditional on the checkpoint being unchanged, so a concurrent reset
    always wins over a total computed for the old window.

    Branch locks only serialize callers inside one process. When the ledger
    store also holds the report history (:class:`AtomicLedgerStore`), the
    whole read-fold-write step runs in one database write transaction, which
    serializes it with report saves and recalculations in other processes.
    """

    def __init__(
        self,
        reports: ReportStore,
        ledgers: LedgerStore,
        registry: BranchRegistry,
        locks: BranchLockManager | None = None,
        clock: Callable[[], datetime] = utc_now,
        publisher: Any = None,
        max_attempts: int | None = None,
        max_abs_total: Decimal | None = None,
        rebuild_concurrency: int | None = None,
    ):
        settings = get_settings()
        self.reports = reports
        self.ledgers = ledgers
        self.registry = registry
        self.locks = locks or BranchLockManager()
        self.clock = clock
        self.publisher = publisher
        self._max_attempts = max_attempts or settings.recalc_max_attempts
        self._max_abs_total = max_abs_total or settings.ledger_max_abs_total
        self._rebuild_concurrency = rebuild_concurrency or settings.rebuild_concurrency
        # Stores sharing one database recalculate in a single write transaction.
        self.atomic = isinstance(ledgers, AtomicLedgerStore) and ledgers.covers(reports)

    async def ensure_active(self, branch_id: str) -> None:
        """Raise UnknownBranch unless the registry knows the branch as active."""
        if not branch_id or not await self.registry.is_active(branch_id):
            raise UnknownBranch(branch_id)

    async def recalculate(self, branch_id: str) -> Decimal:
        """Recompute and store the branch total; return the new total."""
        await self.ensure_active(branch_id)
        async with self.locks.hold(branch_id):
            return await self.recalculate_locked(branch_id)

    def _fold(self, branch_id: str) -> Callable[[list[ReportRecord]], Decimal]:
        return partial(sum_contributions, max_abs_total=self._max_abs_total, branch_id=branch_id)

    def _recalculated(
        self, branch_id: str, total: Decimal, window_start: datetime | None, report_count: int
    ) -> Decimal:
        logger.info(
            "ledger_recalculated",
            branch_id=branch_id,
            total=str(total),
            report_count=report_count,
            window_start=window_start.isoformat() if window_start else None,
        )
        if self.publisher is not None:
            self.publisher.publish(ledger_recalculated(branch_id, total, window_start))
        return total

    async def recalculate_locked(self, branch_id: str) -> Decimal:
        """Recalculate assuming the caller already holds the branch lock."""
        if self.atomic:
            total, window_start, report_count = await self.ledgers.recalculate_atomic(
                branch_id, self._fold(branch_id), self.clock()
            )
            return self._recalculated(branch_id, total, window_start, report_count)

        fold = self._fold(branch_id)
        for attempt in range(1, self._max_attempts + 1):
            ledger = await self.ledgers.get(branch_id)
            window_start = ledger.last_reset_at if ledger else None
            records = await self.reports.list_for_branch(branch_id, since=window_start)
            total = fold(records)

            if await self.ledgers.write_total(branch_id, total, window_start, self.clock()):
                return self._recalculated(branch_id, total, window_start, len(records))

            logger.warning("ledger_checkpoint_moved", branch_id=branch_id, attempt=attempt)

        raise TransientStoreError(
            f"Checkpoint kept moving during recalculation after {self._max_attempts} attempts",
            branch_id=branch_id,
        )

    async def reset_locked(self, branch_id: str, reset_at: datetime) -> BranchLedger:
        """Move the checkpoint assuming the caller already holds the branch lock."""
        if self.atomic:
            return await self.ledgers.reset_atomic(branch_id, reset_at, self._fold(branch_id))
        return await self.ledgers.reset(branch_id, reset_at)

    async def rebuild_all(self) -> RebuildResult:
        """Recalculate every active branch.

        Each branch holds only its own lock for one recalculation. Failures
        are collected per branch so they can be retried individually.
        """
        branch_ids = await self.registry.list_active()
        semaphore = asyncio.Semaphore(self._rebuild_concurrency)

        async def _rebuild(branch_id: str) -> Decimal:
            async with semaphore, self.locks.hold(branch_id):
                return await self.recalculate_locked(branch_id)

        logger.info("rebuild_started", branch_count=len(branch_ids))
        outcomes = await asyncio.gather(
            *(_rebuild(branch_id) for branch_id in branch_ids), return_exceptions=True
        )

        result = RebuildResult()
        for branch_id, outcome in zip(branch_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "rebuild_branch_failed",
                    branch_id=branch_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                result.failures[branch_id] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.totals[branch_id] = outcome

        logger.info(
            "rebuild_completed",
            succeeded=len(result.totals),
            failed=len(result.failures),
        )
        if self.publisher is not None:
            self.publisher.publish(ledger_rebuilt(result))
        return result
