"""Data model for shift reports, branch ledgers and summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    """Parse a monetary amount and quantize it to cents.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.10")`` rather
    than its binary expansion. ``None`` and empty strings count as zero,
    matching how report forms submit blank fields.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValueError(f"Invalid monetary amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(amount: Decimal) -> str:
    """Format an amount for JSON payloads."""
    return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))


def _require_aware(name: str, value: datetime | None) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


def _require_non_negative(name: str, amount: Decimal) -> None:
    if amount < 0:
        raise ValueError(f"{name} must not be negative, got {amount}")


@dataclass(frozen=True)
class DeliveryBreakdown:
    """Third-party delivery app takings for one shift."""

    apps: dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized = {name: to_money(amount) for name, amount in self.apps.items()}
        for name, amount in normalized.items():
            _require_non_negative(f"delivery[{name}]", amount)
        object.__setattr__(self, "apps", normalized)

    @property
    def total(self) -> Decimal:
        return sum(self.apps.values(), ZERO)

    def to_dict(self) -> dict[str, str]:
        data = {name: money_str(amount) for name, amount in self.apps.items()}
        data["total"] = money_str(self.total)
        return data


@dataclass(frozen=True)
class Expense:
    """Expense deducted from the shift's takings."""

    amount: Decimal = ZERO
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_money(self.amount))
        object.__setattr__(self, "description", (self.description or "").strip())
        _require_non_negative("expense", self.amount)


@dataclass(frozen=True)
class ReportRecord:
    """One shift report as seen by the ledger (read-only).

    ``branch_id`` and ``created_at`` never change for the lifetime of a
    record. An edit that moves a report to another branch is handled as a
    delete from the old branch plus a create in the new one.
    """

    branch_id: str
    cash: Decimal = ZERO
    electronic_payments: Decimal = ZERO
    delivery: DeliveryBreakdown = field(default_factory=DeliveryBreakdown)
    expense: Expense = field(default_factory=Expense)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    report_id: str = field(default_factory=lambda: str(uuid4()))
    submitted_by: str | None = None

    def __post_init__(self) -> None:
        if not self.branch_id:
            raise ValueError("branch_id is required")
        _require_aware("created_at", self.created_at)
        object.__setattr__(self, "cash", to_money(self.cash))
        object.__setattr__(self, "electronic_payments", to_money(self.electronic_payments))
        _require_non_negative("cash", self.cash)
        _require_non_negative("electronic_payments", self.electronic_payments)

    @property
    def delivery_total(self) -> Decimal:
        return self.delivery.total

    @property
    def cash_on_hand(self) -> Decimal:
        """Cash left in the drawer after paying the shift's expenses."""
        return self.cash - self.expense.amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.report_id,
            "branch_id": self.branch_id,
            "created_at": self.created_at.isoformat(),
            "cash": money_str(self.cash),
            "electronic_payments": money_str(self.electronic_payments),
            "delivery": self.delivery.to_dict(),
            "expense": {
                "amount": money_str(self.expense.amount),
                "description": self.expense.description,
            },
            "cash_on_hand": money_str(self.cash_on_hand),
            "submitted_by": self.submitted_by,
        }


@dataclass
class BranchLedger:
    """Persisted running total and checkpoint for one branch."""

    branch_id: str
    cumulative_total: Decimal = ZERO
    last_reset_at: datetime | None = None
    last_recalculated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "cumulative_total": money_str(self.cumulative_total),
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
            "last_recalculated_at": (
                self.last_recalculated_at.isoformat() if self.last_recalculated_at else None
            ),
        }


@dataclass
class FieldTotals:
    """Per-field sums over a window of reports."""

    cash: Decimal = ZERO
    electronic_payments: Decimal = ZERO
    delivery: dict[str, Decimal] = field(default_factory=dict)
    delivery_total: Decimal = ZERO
    expenses: Decimal = ZERO
    cash_on_hand: Decimal = ZERO
    net: Decimal = ZERO
    report_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        delivery = {name: money_str(amount) for name, amount in self.delivery.items()}
        delivery["total"] = money_str(self.delivery_total)
        return {
            "cash": money_str(self.cash),
            "electronic_payments": money_str(self.electronic_payments),
            "delivery": delivery,
            "expenses": money_str(self.expenses),
            "cash_on_hand": money_str(self.cash_on_hand),
            "net": money_str(self.net),
            "report_count": self.report_count,
        }


@dataclass
class BranchSummary:
    """Daily and monthly breakdowns plus the branch's cumulative total."""

    branch_id: str
    as_of: datetime
    daily: FieldTotals
    monthly: FieldTotals
    cumulative: Decimal
    last_reset_at: datetime | None
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "as_of": self.as_of.isoformat(),
            "daily": self.daily.to_dict(),
            "monthly": self.monthly.to_dict(),
            "cumulative": money_str(self.cumulative),
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class LedgerOverview:
    """Ledgers for every active branch.

    ``grand_total`` is informational only; branch ledgers are independent
    and the sum is not read under any cross-branch lock.
    """

    ledgers: list[BranchLedger]

    @property
    def grand_total(self) -> Decimal:
        return sum((ledger.cumulative_total for ledger in self.ledgers), ZERO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "branches": [ledger.to_dict() for ledger in self.ledgers],
            "grand_total": money_str(self.grand_total),
        }


@dataclass
class RebuildResult:
    """Outcome of a rebuild-all pass; failed branches can be retried individually."""

    totals: dict[str, Decimal] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "totals": {branch_id: money_str(total) for branch_id, total in self.totals.items()},
            "failures": {branch_id: str(error) for branch_id, error in self.failures.items()},
        }
