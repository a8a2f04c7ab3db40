"""SQLite-backed report and ledger stores.

Timestamps are stored as UTC ISO-8601 strings with fixed microsecond
precision so that string comparison orders them correctly. Decimals are
stored as text.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import structlog

from branch_ledger.errors import TransientStoreError
from branch_ledger.models import BranchLedger, DeliveryBreakdown, Expense, ReportRecord
from branch_ledger.stores.base import Fold, ReportStore

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS reports (
    report_id TEXT PRIMARY KEY,
    branch_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    cash TEXT NOT NULL,
    electronic_payments TEXT NOT NULL,
    delivery TEXT NOT NULL,
    expense_amount TEXT NOT NULL,
    expense_description TEXT NOT NULL DEFAULT '',
    submitted_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_reports_branch_created ON reports (branch_id, created_at);
CREATE TABLE IF NOT EXISTS branch_ledgers (
    branch_id TEXT PRIMARY KEY,
    cumulative_total TEXT NOT NULL DEFAULT '0.00',
    last_reset_at TEXT,
    last_recalculated_at TEXT
);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteDatabase:
    """Connection handling shared by the SQLite stores."""

    def __init__(self, path: str | Path, timeout: float = 5.0):
        self.path = str(path)
        self._timeout = timeout
        with self.cursor() as cur:
            cur.executescript(SCHEMA)

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Open a connection, yield a cursor, commit or roll back."""
        try:
            conn = sqlite3.connect(self.path, timeout=self._timeout)
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Cannot open ledger database: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            logger.warning("sqlite_operational_error", path=self.path, error=str(e))
            raise TransientStoreError(f"Ledger database unavailable: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def run(self, fn: Any, *args: Any) -> Any:
        """Run a blocking function taking a cursor in a worker thread."""

        def _call() -> Any:
            with self.cursor() as cur:
                return fn(cur, *args)

        return await asyncio.to_thread(_call)


class SQLiteReportStore:
    """Report history in the ``reports`` table."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ReportRecord:
        return ReportRecord(
            report_id=row["report_id"],
            branch_id=row["branch_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            cash=Decimal(row["cash"]),
            electronic_payments=Decimal(row["electronic_payments"]),
            delivery=DeliveryBreakdown(
                {name: Decimal(amount) for name, amount in json.loads(row["delivery"]).items()}
            ),
            expense=Expense(Decimal(row["expense_amount"]), row["expense_description"]),
            submitted_by=row["submitted_by"],
        )

    async def save(self, report: ReportRecord) -> ReportRecord:
        def _save(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT INTO reports (report_id, branch_id, created_at, cash,
                    electronic_payments, delivery, expense_amount, expense_description,
                    submitted_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(report_id) DO UPDATE SET
                    branch_id = excluded.branch_id,
                    cash = excluded.cash,
                    electronic_payments = excluded.electronic_payments,
                    delivery = excluded.delivery,
                    expense_amount = excluded.expense_amount,
                    expense_description = excluded.expense_description,
                    submitted_by = excluded.submitted_by
                """,
                (
                    report.report_id,
                    report.branch_id,
                    _ts(report.created_at),
                    str(report.cash),
                    str(report.electronic_payments),
                    json.dumps({k: str(v) for k, v in report.delivery.apps.items()}),
                    str(report.expense.amount),
                    report.expense.description,
                    report.submitted_by,
                ),
            )

        await self.db.run(_save)
        return report

    async def get(self, report_id: str) -> ReportRecord | None:
        def _get(cur: sqlite3.Cursor) -> ReportRecord | None:
            cur.execute("SELECT * FROM reports WHERE report_id = ?", (report_id,))
            row = cur.fetchone()
            return self._to_record(row) if row else None

        return await self.db.run(_get)

    async def delete(self, report_id: str) -> ReportRecord | None:
        def _delete(cur: sqlite3.Cursor) -> ReportRecord | None:
            cur.execute("SELECT * FROM reports WHERE report_id = ?", (report_id,))
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute("DELETE FROM reports WHERE report_id = ?", (report_id,))
            return self._to_record(row)

        return await self.db.run(_delete)

    @classmethod
    def select_for_branch(
        cls, cur: sqlite3.Cursor, branch_id: str, since: datetime | None
    ) -> list[ReportRecord]:
        if since is None:
            cur.execute(
                "SELECT * FROM reports WHERE branch_id = ? ORDER BY created_at",
                (branch_id,),
            )
        else:
            cur.execute(
                "SELECT * FROM reports WHERE branch_id = ? AND created_at >= ? "
                "ORDER BY created_at",
                (branch_id, _ts(since)),
            )
        return [cls._to_record(row) for row in cur.fetchall()]

    async def list_for_branch(
        self, branch_id: str, since: datetime | None = None
    ) -> list[ReportRecord]:
        return await self.db.run(self.select_for_branch, branch_id, since)


class SQLiteLedgerStore:
    """Ledger rows in the ``branch_ledgers`` table."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    @staticmethod
    def _to_ledger(row: sqlite3.Row) -> BranchLedger:
        return BranchLedger(
            branch_id=row["branch_id"],
            cumulative_total=Decimal(row["cumulative_total"]),
            last_reset_at=_parse_ts(row["last_reset_at"]),
            last_recalculated_at=_parse_ts(row["last_recalculated_at"]),
        )

    async def get(self, branch_id: str) -> BranchLedger | None:
        def _get(cur: sqlite3.Cursor) -> BranchLedger | None:
            cur.execute("SELECT * FROM branch_ledgers WHERE branch_id = ?", (branch_id,))
            row = cur.fetchone()
            return self._to_ledger(row) if row else None

        return await self.db.run(_get)

    async def get_many(self, branch_ids: list[str]) -> list[BranchLedger]:
        if not branch_ids:
            return []

        def _get_many(cur: sqlite3.Cursor) -> list[BranchLedger]:
            placeholders = ", ".join("?" for _ in branch_ids)
            cur.execute(
                f"SELECT * FROM branch_ledgers WHERE branch_id IN ({placeholders})",
                tuple(branch_ids),
            )
            rows = {row["branch_id"]: self._to_ledger(row) for row in cur.fetchall()}
            return [rows[b] for b in branch_ids if b in rows]

        return await self.db.run(_get_many)

    async def list_branch_ids(self) -> list[str]:
        def _list(cur: sqlite3.Cursor) -> list[str]:
            cur.execute("SELECT branch_id FROM branch_ledgers ORDER BY branch_id")
            return [row["branch_id"] for row in cur.fetchall()]

        return await self.db.run(_list)

    async def write_total(
        self,
        branch_id: str,
        total: Decimal,
        window_start: datetime | None,
        recalculated_at: datetime,
    ) -> bool:
        def _write(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "UPDATE branch_ledgers SET cumulative_total = ?, last_recalculated_at = ? "
                "WHERE branch_id = ? AND last_reset_at IS ?",
                (str(total), _ts(recalculated_at), branch_id, _ts(window_start)),
            )
            if cur.rowcount:
                return True
            if window_start is not None:
                return False
            # No row yet: first recalculation creates it.
            cur.execute(
                "INSERT OR IGNORE INTO branch_ledgers "
                "(branch_id, cumulative_total, last_reset_at, last_recalculated_at) "
                "VALUES (?, ?, NULL, ?)",
                (branch_id, str(total), _ts(recalculated_at)),
            )
            return cur.rowcount == 1

        return await self.db.run(_write)

    async def reset(self, branch_id: str, reset_at: datetime) -> BranchLedger:
        def _reset(cur: sqlite3.Cursor) -> BranchLedger:
            cur.execute(
                "INSERT INTO branch_ledgers (branch_id, cumulative_total, last_reset_at) "
                "VALUES (?, '0.00', ?) "
                "ON CONFLICT(branch_id) DO UPDATE SET "
                "cumulative_total = '0.00', last_reset_at = excluded.last_reset_at",
                (branch_id, _ts(reset_at)),
            )
            cur.execute("SELECT * FROM branch_ledgers WHERE branch_id = ?", (branch_id,))
            return self._to_ledger(cur.fetchone())

        return await self.db.run(_reset)

    async def clear_checkpoint(self, branch_id: str) -> None:
        def _clear(cur: sqlite3.Cursor) -> None:
            cur.execute(
                "UPDATE branch_ledgers SET last_reset_at = NULL WHERE branch_id = ?",
                (branch_id,),
            )

        await self.db.run(_clear)

    # === Single-transaction recalculation ===

    def covers(self, reports: ReportStore) -> bool:
        if not isinstance(reports, SQLiteReportStore):
            return False
        return Path(reports.db.path).resolve() == Path(self.db.path).resolve()

    @staticmethod
    def _begin(cur: sqlite3.Cursor) -> None:
        # Takes the database write lock up front; other writers wait on it.
        cur.execute("BEGIN IMMEDIATE")

    @staticmethod
    def _recompute(
        cur: sqlite3.Cursor, branch_id: str, fold: Fold, recalculated_at: datetime
    ) -> tuple[Decimal, datetime | None, int]:
        cur.execute("SELECT last_reset_at FROM branch_ledgers WHERE branch_id = ?", (branch_id,))
        row = cur.fetchone()
        window_start = _parse_ts(row["last_reset_at"]) if row else None
        records = SQLiteReportStore.select_for_branch(cur, branch_id, window_start)
        total = fold(records)
        cur.execute(
            "INSERT INTO branch_ledgers (branch_id, cumulative_total, last_recalculated_at) "
            "VALUES (?, ?, ?) "
            "ON CONFLICT(branch_id) DO UPDATE SET "
            "cumulative_total = excluded.cumulative_total, "
            "last_recalculated_at = excluded.last_recalculated_at",
            (branch_id, str(total), _ts(recalculated_at)),
        )
        return total, window_start, len(records)

    async def recalculate_atomic(
        self, branch_id: str, fold: Fold, recalculated_at: datetime
    ) -> tuple[Decimal, datetime | None, int]:
        def _recalculate(cur: sqlite3.Cursor) -> tuple[Decimal, datetime | None, int]:
            self._begin(cur)
            return self._recompute(cur, branch_id, fold, recalculated_at)

        return await self.db.run(_recalculate)

    async def reset_atomic(self, branch_id: str, reset_at: datetime, fold: Fold) -> BranchLedger:
        def _reset(cur: sqlite3.Cursor) -> BranchLedger:
            self._begin(cur)
            cur.execute(
                "INSERT INTO branch_ledgers (branch_id, last_reset_at) VALUES (?, ?) "
                "ON CONFLICT(branch_id) DO UPDATE SET last_reset_at = excluded.last_reset_at",
                (branch_id, _ts(reset_at)),
            )
            # Reports another process stamped at or after the reset instant still count.
            self._recompute(cur, branch_id, fold, reset_at)
            cur.execute("SELECT * FROM branch_ledgers WHERE branch_id = ?", (branch_id,))
            return self._to_ledger(cur.fetchone())

        return await self.db.run(_reset)
