"""Ledger events, the WebSocket publisher and the ledger watcher."""

from branch_ledger.events.publisher import ClientConnection, EventPublisher
from branch_ledger.events.types import (
    EventType,
    LedgerEvent,
    TotalEvent,
    error_event,
    ledger_rebuilt,
    ledger_recalculated,
    ledger_reset,
    report_changed,
)
from branch_ledger.events.watcher import LedgerWatcher

__all__ = [
    "ClientConnection",
    "EventPublisher",
    "EventType",
    "LedgerEvent",
    "LedgerWatcher",
    "TotalEvent",
    "error_event",
    "ledger_rebuilt",
    "ledger_recalculated",
    "ledger_reset",
    "report_changed",
]
