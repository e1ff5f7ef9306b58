"""EVM JSON-RPC client and the DebtVault ABI."""
from .client import EvmClient

__all__ = ["EvmClient"]
