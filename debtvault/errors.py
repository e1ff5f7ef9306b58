"""Exception hierarchy for the read-model engine."""
from __future__ import annotations


class DebtVaultError(Exception):
    pass


class ConfigError(DebtVaultError, ValueError):
    pass


class TransportError(DebtVaultError):
    """RPC endpoint unreachable, timed out or returned a non-JSON body; retryable."""


class RpcError(DebtVaultError):
    """JSON-RPC error object returned by the node (e.g. execution reverted)."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class DecodeError(DebtVaultError):
    """Malformed log or ABI return data; not retryable."""


class UnknownToken(DebtVaultError, KeyError):
    pass


class DuplicateEntity(DebtVaultError):
    """A loan id was created twice with different payloads."""


class InvariantViolation(DebtVaultError):
    """Logged when a fold would break a position invariant; never raised to callers."""


class StaleSelectionDiscard(DebtVaultError):
    """Refresh result for an account that is no longer selected."""
