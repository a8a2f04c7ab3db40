"""Interfaces of the collaborators the ledger engine reads and writes."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from branch_ledger.models import BranchLedger, ReportRecord


class ReportStore(Protocol):
    """Shift report history, owned by the surrounding application."""

    async def list_for_branch(
        self, branch_id: str, since: datetime | None = None
    ) -> list[ReportRecord]:
        """Return the branch's reports with ``created_at >= since``, oldest first."""
        ...


class LedgerStore(Protocol):
    """One ledger row per branch, always upserted."""

    async def get(self, branch_id: str) -> BranchLedger | None: ...

    async def get_many(self, branch_ids: list[str]) -> list[BranchLedger]: ...

    async def list_branch_ids(self) -> list[str]: ...

    async def write_total(
        self,
        branch_id: str,
        total: Decimal,
        window_start: datetime | None,
        recalculated_at: datetime,
    ) -> bool:
        """Store ``total`` if the branch's checkpoint is still ``window_start``.

        Returns False without writing when a reset moved the checkpoint after
        the total was computed. A missing row counts as checkpoint ``None``.
        """
        ...

    async def reset(self, branch_id: str, reset_at: datetime) -> BranchLedger:
        """Zero the total and move the checkpoint to ``reset_at``."""
        ...

    async def clear_checkpoint(self, branch_id: str) -> None:
        """Set the checkpoint back to "beginning of history"."""
        ...


Fold = Callable[[list[ReportRecord]], Decimal]


@runtime_checkable
class AtomicLedgerStore(Protocol):
    """Ledger store that also holds report history in one transactional database.

    Reading the window, folding its reports and writing the total happen in
    one write transaction, so writers in other processes sharing the
    database are serialized with it. Report saves are writes too and wait
    for the transaction to finish.
    """

    def covers(self, reports: ReportStore) -> bool:
        """True when ``reports`` reads the same database as this store."""
        ...

    async def recalculate_atomic(
        self, branch_id: str, fold: Fold, recalculated_at: datetime
    ) -> tuple[Decimal, datetime | None, int]:
        """Recompute and store the total; return it with its window start and report count."""
        ...

    async def reset_atomic(self, branch_id: str, reset_at: datetime, fold: Fold) -> BranchLedger:
        """Move the checkpoint and store the total of the new window."""
        ...


class BranchRegistry(Protocol):
    """Resolves branch identities (branch CRUD lives elsewhere)."""

    async def is_active(self, branch_id: str) -> bool: ...

    async def list_active(self) -> list[str]: ...
