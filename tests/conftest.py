"""Pytest configuration and fixtures."""

import os
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("BRANCH_REGISTRY_URL", "http://registry.test")
os.environ.setdefault("LOCK_TIMEOUT_SECONDS", "2.0")
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")

from branch_ledger.locks import BranchLockManager  # noqa: E402
from branch_ledger.models import DeliveryBreakdown, Expense, ReportRecord  # noqa: E402
from branch_ledger.service import LedgerService  # noqa: E402
from branch_ledger.stores.memory import MemoryLedgerStore, MemoryReportStore  # noqa: E402
from branch_ledger.stores.registry import StaticBranchRegistry  # noqa: E402


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_report(
    branch_id: str,
    cash: str | int = 0,
    electronic: str | int = 0,
    delivery: dict[str, str | int] | None = None,
    expense: str | int = 0,
    created_at: datetime | None = None,
    report_id: str | None = None,
) -> ReportRecord:
    """Build a report with string/int amounts for readability."""
    kwargs = {}
    if report_id is not None:
        kwargs["report_id"] = report_id
    return ReportRecord(
        branch_id=branch_id,
        cash=Decimal(str(cash)),
        electronic_payments=Decimal(str(electronic)),
        delivery=DeliveryBreakdown({k: Decimal(str(v)) for k, v in (delivery or {}).items()}),
        expense=Expense(Decimal(str(expense)), ""),
        created_at=created_at or datetime(2026, 3, 10, 12, 0, tzinfo=UTC),
        **kwargs,
    )


@pytest.fixture
def clock():
    """Clock starting mid-month, mid-day."""
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def registry():
    """Registry with two active branches and one inactive branch."""
    return StaticBranchRegistry(active=["B1", "B2"], inactive=["CLOSED"])


@pytest.fixture
def report_store():
    return MemoryReportStore()


@pytest.fixture
def ledger_store():
    return MemoryLedgerStore()


@pytest.fixture
def locks():
    return BranchLockManager(timeout=2.0)


@pytest.fixture
def service(report_store, ledger_store, registry, locks, clock):
    """LedgerService over in-memory stores and a fake clock."""
    return LedgerService(report_store, ledger_store, registry, locks=locks, clock=clock)


@pytest.fixture
def submit(report_store, service, clock):
    """Store a report created "now" and run the create hook, like a handler would."""

    async def _submit(branch_id: str, **amounts):
        report = make_report(branch_id, created_at=clock(), **amounts)
        await report_store.save(report)
        total = await service.on_report_created(report)
        return report, total

    return _submit
