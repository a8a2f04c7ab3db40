"""Turns ledger rows written by other processes into published events.

Report handlers run in their own processes and publish into their own
(usually absent) publisher. The watcher polls the shared ledger store and
publishes a ``ledger.reset`` or ``ledger.recalculated`` event for every row
whose checkpoint, total or recalculation stamp moved since the last poll.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from branch_ledger.config import get_settings
from branch_ledger.events.types import TotalEvent, ledger_recalculated, ledger_reset
from branch_ledger.models import BranchLedger
from branch_ledger.stores.base import LedgerStore

logger = structlog.get_logger(__name__)

Snapshot = tuple[Decimal, datetime | None, datetime | None]


def _snapshot(ledger: BranchLedger) -> Snapshot:
    return (ledger.cumulative_total, ledger.last_reset_at, ledger.last_recalculated_at)


class LedgerWatcher:
    """Polls ledger rows and publishes what changed.

    The first poll only records a baseline; dashboards get the current
    totals from the publisher's history after that.

    Usage:
        watcher = LedgerWatcher(ledgers, publisher)
        await watcher.run()   # until stop() is called
    """

    def __init__(self, ledgers: LedgerStore, publisher: Any, interval: float | None = None):
        self.ledgers = ledgers
        self.publisher = publisher
        self._interval = interval or get_settings().watch_interval_seconds
        self._seen: dict[str, Snapshot] | None = None
        self._is_running = False
        self._logger = logger.bind(component="ledger_watcher")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def poll(self) -> list[TotalEvent]:
        """Read every ledger row once and publish changes since the last poll."""
        branch_ids = await self.ledgers.list_branch_ids()
        rows = await self.ledgers.get_many(branch_ids)
        current = {row.branch_id: row for row in rows}

        events: list[TotalEvent] = []
        if self._seen is not None:
            for branch_id, row in current.items():
                before = self._seen.get(branch_id)
                if before == _snapshot(row):
                    continue
                if row.last_reset_at is not None and (
                    before is None or before[1] != row.last_reset_at
                ):
                    events.append(
                        ledger_reset(branch_id, row.last_reset_at, row.cumulative_total)
                    )
                else:
                    events.append(
                        ledger_recalculated(branch_id, row.cumulative_total, row.last_reset_at)
                    )

        self._seen = {branch_id: _snapshot(row) for branch_id, row in current.items()}
        for event in events:
            self.publisher.publish(event)
        if events:
            self._logger.debug("ledger_changes_published", count=len(events))
        return events

    async def run(self) -> None:
        """Poll until stopped. A failed poll is logged and retried next interval."""
        self._is_running = True
        self._logger.info("watcher_started", interval=self._interval)
        while self._is_running:
            try:
                await self.poll()
            except Exception as e:
                self._logger.error("watch_poll_failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self._interval)
        self._logger.info("watcher_stopped")

    def stop(self) -> None:
        self._is_running = False
