"""Report, ledger and branch stores consumed by the engine."""

from branch_ledger.stores.base import AtomicLedgerStore, BranchRegistry, LedgerStore, ReportStore
from branch_ledger.stores.memory import MemoryLedgerStore, MemoryReportStore
from branch_ledger.stores.registry import HTTPBranchRegistry, RegistryError, StaticBranchRegistry
from branch_ledger.stores.sqlite import SQLiteDatabase, SQLiteLedgerStore, SQLiteReportStore

__all__ = [
    # Interfaces
    "AtomicLedgerStore",
    "BranchRegistry",
    "LedgerStore",
    "ReportStore",
    # In-memory
    "MemoryLedgerStore",
    "MemoryReportStore",
    "StaticBranchRegistry",
    # Persistent
    "SQLiteDatabase",
    "SQLiteLedgerStore",
    "SQLiteReportStore",
    # Remote
    "HTTPBranchRegistry",
    "RegistryError",
]
