"""Event type definitions for ledger change notifications.

These events are published to connected dashboard clients so branch totals
refresh without polling.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from branch_ledger.models import RebuildResult, money_str


class EventType(str, Enum):
    """Types of events published by the ledger engine."""

    # Report mutations
    REPORT_CREATED = "report.created"
    REPORT_UPDATED = "report.updated"
    REPORT_DELETED = "report.deleted"

    # Ledger changes
    LEDGER_RECALCULATED = "ledger.recalculated"
    LEDGER_RESET = "ledger.reset"
    LEDGER_REBUILT = "ledger.rebuilt"

    # Errors
    ERROR = "error"


@dataclass
class LedgerEvent:
    """Base event structure for all ledger events."""

    event_type: EventType
    branch_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: UUID = field(default_factory=uuid4)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary for JSON transmission."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "branch_id": self.branch_id,
            "data": self.data,
        }


@dataclass
class TotalEvent(LedgerEvent):
    """Event carrying a branch's new cumulative total."""

    cumulative_total: Decimal = Decimal("0")
    last_reset_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["ledger"] = {
            "cumulative_total": money_str(self.cumulative_total),
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
        }
        return base


# Factory functions for creating events


def report_changed(
    event_type: EventType, branch_id: str, report_id: str, contribution: Decimal
) -> LedgerEvent:
    """Create a report created/updated/deleted event."""
    return LedgerEvent(
        event_type=event_type,
        branch_id=branch_id,
        data={"report_id": report_id, "contribution": money_str(contribution)},
    )


def ledger_recalculated(
    branch_id: str, total: Decimal, last_reset_at: datetime | None
) -> TotalEvent:
    """Create a ledger recalculated event."""
    return TotalEvent(
        event_type=EventType.LEDGER_RECALCULATED,
        branch_id=branch_id,
        cumulative_total=total,
        last_reset_at=last_reset_at,
    )


def ledger_reset(
    branch_id: str, reset_at: datetime, total: Decimal = Decimal("0")
) -> TotalEvent:
    """Create a ledger reset event."""
    return TotalEvent(
        event_type=EventType.LEDGER_RESET,
        branch_id=branch_id,
        cumulative_total=total,
        last_reset_at=reset_at,
    )


def ledger_rebuilt(result: RebuildResult) -> LedgerEvent:
    """Create a rebuild-all completed event."""
    return LedgerEvent(
        event_type=EventType.LEDGER_REBUILT,
        data={
            "succeeded": sorted(result.totals),
            "failed": sorted(result.failures),
        },
    )


def error_event(
    message: str, branch_id: str | None = None, details: dict[str, Any] | None = None
) -> LedgerEvent:
    """Create an error event."""
    return LedgerEvent(
        event_type=EventType.ERROR,
        branch_id=branch_id,
        data={"message": message, "details": details or {}},
    )
