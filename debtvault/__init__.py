"""DebtVault position reconciliation and portfolio analytics."""

__version__ = "0.1.0"
