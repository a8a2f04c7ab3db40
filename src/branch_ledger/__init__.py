"""Branch Ledger - per-branch cumulative totals over shift report history."""

__version__ = "0.1.0"

from branch_ledger.checkpoint import CheckpointManager
from branch_ledger.config import configure_logging, get_settings
from branch_ledger.contribution import contribution
from branch_ledger.errors import (
    LedgerError,
    LockTimeout,
    NumericOverflow,
    TransientStoreError,
    UnknownBranch,
)
from branch_ledger.events import EventPublisher, EventType, LedgerEvent
from branch_ledger.locks import BranchLockManager
from branch_ledger.models import (
    BranchLedger,
    BranchSummary,
    DeliveryBreakdown,
    Expense,
    FieldTotals,
    LedgerOverview,
    RebuildResult,
    ReportRecord,
    to_money,
)
from branch_ledger.recalculation import RecalculationEngine
from branch_ledger.service import LedgerService
from branch_ledger.summary import SummaryReader

__all__ = [
    # Version
    "__version__",
    # Model
    "BranchLedger",
    "BranchSummary",
    "DeliveryBreakdown",
    "Expense",
    "FieldTotals",
    "LedgerOverview",
    "RebuildResult",
    "ReportRecord",
    "to_money",
    "contribution",
    # Engine
    "BranchLockManager",
    "CheckpointManager",
    "LedgerService",
    "RecalculationEngine",
    "SummaryReader",
    # Events
    "EventPublisher",
    "EventType",
    "LedgerEvent",
    # Errors
    "LedgerError",
    "LockTimeout",
    "NumericOverflow",
    "TransientStoreError",
    "UnknownBranch",
    # Config
    "get_settings",
    "configure_logging",
]
