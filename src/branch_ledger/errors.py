"""Exceptions raised by the ledger engine and its stores."""

from typing import Any


class LedgerError(Exception):
    """Base exception for ledger errors."""

    retryable = False

    def __init__(self, message: str, branch_id: str | None = None, details: Any = None):
        super().__init__(message)
        self.branch_id = branch_id
        self.details = details


class UnknownBranch(LedgerError):
    """Branch id does not resolve to a known, active branch."""

    def __init__(self, branch_id: str, details: Any = None):
        super().__init__(f"Unknown or inactive branch: {branch_id!r}", branch_id, details)


class TransientStoreError(LedgerError):
    """Record store, ledger store or registry is temporarily unavailable."""

    retryable = True


class LockTimeout(TransientStoreError):
    """Per-branch critical section could not be entered in time."""

    def __init__(self, branch_id: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for ledger lock on {branch_id!r}",
            branch_id,
            {"timeout": timeout},
        )
        self.timeout = timeout


class NumericOverflow(LedgerError):
    """Running total left the representable range."""

    pass
