"""Protocol interfaces for the DebtVault read-model."""
from .chain import ChainClient

__all__ = ["ChainClient"]
