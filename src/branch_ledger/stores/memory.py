"""In-process stores for embedding the engine and for tests."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from branch_ledger.models import ZERO, BranchLedger, ReportRecord


class MemoryReportStore:
    """Report history kept in a dict keyed by report id."""

    def __init__(self, reports: Iterable[ReportRecord] = ()):
        self._reports: dict[str, ReportRecord] = {}
        for report in reports:
            self._reports[report.report_id] = report

    async def save(self, report: ReportRecord) -> ReportRecord:
        """Insert or replace a report."""
        self._reports[report.report_id] = report
        return report

    async def get(self, report_id: str) -> ReportRecord | None:
        return self._reports.get(report_id)

    async def delete(self, report_id: str) -> ReportRecord | None:
        return self._reports.pop(report_id, None)

    async def list_for_branch(
        self, branch_id: str, since: datetime | None = None
    ) -> list[ReportRecord]:
        reports = [
            r
            for r in self._reports.values()
            if r.branch_id == branch_id and (since is None or r.created_at >= since)
        ]
        return sorted(reports, key=lambda r: r.created_at)


class MemoryLedgerStore:
    """Ledger rows kept in a dict keyed by branch id."""

    def __init__(self) -> None:
        self._rows: dict[str, BranchLedger] = {}
        self.write_count = 0

    async def get(self, branch_id: str) -> BranchLedger | None:
        row = self._rows.get(branch_id)
        return replace(row) if row else None

    async def get_many(self, branch_ids: list[str]) -> list[BranchLedger]:
        return [replace(self._rows[b]) for b in branch_ids if b in self._rows]

    async def list_branch_ids(self) -> list[str]:
        return sorted(self._rows)

    async def write_total(
        self,
        branch_id: str,
        total: Decimal,
        window_start: datetime | None,
        recalculated_at: datetime,
    ) -> bool:
        row = self._rows.get(branch_id)
        current_start = row.last_reset_at if row else None
        if current_start != window_start:
            return False
        if row is None:
            row = self._rows[branch_id] = BranchLedger(branch_id=branch_id)
        row.cumulative_total = total
        row.last_recalculated_at = recalculated_at
        self.write_count += 1
        return True

    async def reset(self, branch_id: str, reset_at: datetime) -> BranchLedger:
        row = self._rows.setdefault(branch_id, BranchLedger(branch_id=branch_id))
        row.cumulative_total = ZERO
        row.last_reset_at = reset_at
        self.write_count += 1
        return replace(row)

    async def clear_checkpoint(self, branch_id: str) -> None:
        row = self._rows.get(branch_id)
        if row is not None:
            row.last_reset_at = None
            self.write_count += 1
