"""Configuration module for the branch ledger."""

from branch_ledger.config.logging import configure_logging
from branch_ledger.config.settings import LedgerSettings, get_settings

__all__ = ["LedgerSettings", "get_settings", "configure_logging"]
