"""Accounting period close: zero a branch total without touching history."""

from __future__ import annotations

from decimal import Decimal

import structlog

from branch_ledger.events.types import ledger_reset
from branch_ledger.models import BranchLedger
from branch_ledger.recalculation import RecalculationEngine

logger = structlog.get_logger(__name__)


class CheckpointManager:
    """Moves branch checkpoints.

    After a reset only reports created at or after the reset instant count
    toward the branch total. Earlier reports stay in the report store.
    """

    def __init__(self, engine: RecalculationEngine):
        self.engine = engine

    async def reset(self, branch_id: str | None = None) -> list[BranchLedger]:
        """Reset one branch, or every branch when ``branch_id`` is None.

        Every branch is reset under its own lock; no global lock is taken.
        The reset instant is read inside the critical section, so a report
        stamped after it cannot have been counted by an earlier
        recalculation that the reset then overwrites.
        """
        if branch_id is not None:
            await self.engine.ensure_active(branch_id)
            branch_ids = [branch_id]
        else:
            active = await self.engine.registry.list_active()
            stored = await self.engine.ledgers.list_branch_ids()
            branch_ids = sorted(set(active) | set(stored))

        ledgers = []
        for target in branch_ids:
            async with self.engine.locks.hold(target):
                reset_at = self.engine.clock()
                ledger = await self.engine.reset_locked(target, reset_at)
            logger.info("ledger_reset", branch_id=target, reset_at=reset_at.isoformat())
            if self.engine.publisher is not None:
                self.engine.publisher.publish(
                    ledger_reset(target, reset_at, ledger.cumulative_total)
                )
            ledgers.append(ledger)

        if branch_id is None:
            logger.info("all_ledgers_reset", branch_count=len(ledgers))
        return ledgers

    async def clear_checkpoint(self, branch_id: str) -> Decimal:
        """Administrative undo of resets: count the branch's whole history again."""
        await self.engine.ensure_active(branch_id)
        async with self.engine.locks.hold(branch_id):
            await self.engine.ledgers.clear_checkpoint(branch_id)
            logger.warning("ledger_checkpoint_cleared", branch_id=branch_id)
            return await self.engine.recalculate_locked(branch_id)
