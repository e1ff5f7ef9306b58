"""Vault ledger ingestion: event logs and contract state."""
from .reader import LedgerFetchResult, LedgerReader
from .state import VaultStateReader

__all__ = ["LedgerFetchResult", "LedgerReader", "VaultStateReader"]
