"""The single rule mapping a shift report to its ledger contribution.

Every recalculation path goes through :func:`contribution`. After changing
the formula, run a rebuild so stored ledgers pick it up.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation, Overflow, localcontext

from branch_ledger.errors import NumericOverflow
from branch_ledger.models import ZERO, ReportRecord


def contribution(report: ReportRecord) -> Decimal:
    """Return the signed amount ``report`` adds to its branch total."""
    # Net cash position: all takings minus the recorded expense.
    return (
        report.cash
        + report.electronic_payments
        + report.delivery_total
        - report.expense.amount
    )


def sum_contributions(
    reports: Iterable[ReportRecord],
    max_abs_total: Decimal,
    branch_id: str | None = None,
) -> Decimal:
    """Fold reports into a running total, failing loudly on overflow."""
    total = ZERO
    with localcontext() as ctx:
        ctx.traps[Overflow] = True
        ctx.traps[InvalidOperation] = True
        try:
            for report in reports:
                total += contribution(report)
                if abs(total) > max_abs_total:
                    raise NumericOverflow(
                        f"Running total exceeds {max_abs_total}",
                        branch_id=branch_id,
                        details={"report_id": report.report_id},
                    )
        except (Overflow, InvalidOperation) as e:
            raise NumericOverflow(f"Decimal overflow: {e}", branch_id=branch_id) from e
    return total
