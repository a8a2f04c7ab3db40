"""Daily and monthly breakdowns for a branch, alongside its ledger total."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from zoneinfo import ZoneInfo

import structlog

from branch_ledger.config import get_settings
from branch_ledger.contribution import contribution
from branch_ledger.models import ZERO, BranchSummary, FieldTotals, ReportRecord
from branch_ledger.recalculation import RecalculationEngine

logger = structlog.get_logger(__name__)


def start_of_day(moment: datetime, tz: ZoneInfo) -> datetime:
    local = moment.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime, tz: ZoneInfo) -> datetime:
    return start_of_day(moment, tz).replace(day=1)


def accumulate(reports: Iterable[ReportRecord]) -> FieldTotals:
    """Sum every monetary field of ``reports`` independently."""
    totals = FieldTotals()
    for report in reports:
        totals.cash += report.cash
        totals.electronic_payments += report.electronic_payments
        for app, amount in report.delivery.apps.items():
            totals.delivery[app] = totals.delivery.get(app, ZERO) + amount
        totals.delivery_total += report.delivery_total
        totals.expenses += report.expense.amount
        totals.cash_on_hand += report.cash_on_hand
        totals.net += contribution(report)
        totals.report_count += 1
    return totals


class SummaryReader:
    """Composes live field breakdowns with a freshly recalculated total.

    The breakdowns are computed from report history on every call and never
    stored. The cumulative figure comes from a recalculation done right
    before reading, so callers always see their own writes.
    """

    def __init__(self, engine: RecalculationEngine, timezone: str | None = None):
        self.engine = engine
        self.tz = ZoneInfo(timezone or get_settings().ledger_timezone)

    async def summary(self, branch_id: str, as_of: datetime | None = None) -> BranchSummary:
        """Build the summary for ``branch_id`` as of ``as_of`` (default: now)."""
        if as_of is None:
            as_of = self.engine.clock()
        elif as_of.tzinfo is None:
            raise ValueError("as_of must be timezone-aware")

        await self.engine.ensure_active(branch_id)

        day_start = start_of_day(as_of, self.tz)
        month_start = start_of_month(as_of, self.tz)
        records = await self.engine.reports.list_for_branch(branch_id, since=month_start)
        in_month = [r for r in records if r.created_at <= as_of]
        in_day = [r for r in in_month if r.created_at >= day_start]

        async with self.engine.locks.hold(branch_id):
            cumulative = await self.engine.recalculate_locked(branch_id)
            ledger = await self.engine.ledgers.get(branch_id)

        logger.debug(
            "summary_built",
            branch_id=branch_id,
            as_of=as_of.isoformat(),
            daily_reports=len(in_day),
            monthly_reports=len(in_month),
        )
        return BranchSummary(
            branch_id=branch_id,
            as_of=as_of,
            daily=accumulate(in_day),
            monthly=accumulate(in_month),
            cumulative=cumulative,
            last_reset_at=ledger.last_reset_at if ledger else None,
            generated_at=self.engine.clock(),
        )
