"""Data models. All frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Union

from .codec import ratio_bps
from .errors import UnknownToken

ZERO_ADDRESS = "0x" + "0" * 40


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    address: str
    symbol: str
    decimals: int
    name: str = ""


class TokenRegistry:
    """Immutable address -> Token lookup, case-insensitive on address."""

    def __init__(self, tokens: Iterable[Token]) -> None:
        self._by_address: dict[str, Token] = {}
        for token in tokens:
            self._by_address[token.address.lower()] = token

    def __iter__(self):
        return iter(tuple(self._by_address.values()))

    def __len__(self) -> int:
        return len(self._by_address)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._by_address

    def get(self, address: str) -> Token | None:
        return self._by_address.get(address.lower())

    def require(self, address: str) -> Token:
        token = self.get(address)
        if token is None:
            raise UnknownToken(address)
        return token

    def by_symbol(self, symbol: str) -> Token | None:
        for token in self._by_address.values():
            if token.symbol == symbol:
                return token
        return None


# ---------------------------------------------------------------------------
# Ledger events
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    LOAN_CREATED = "LoanCreated"
    LOAN_REPAID = "LoanRepaid"
    LOAN_FORGIVEN = "LoanForgiven"
    LOAN_CLOSED = "LoanClosed"
    LOAN_NFT_TRANSFERRED = "LoanNFTTransferred"
    CREDIT_LINE_UPDATED = "CreditLineUpdated"


ALL_KINDS: tuple[EventKind, ...] = tuple(EventKind)


@dataclass(frozen=True)
class LoanCreated:
    loan_id: int
    borrower: str
    lender: str
    token: str
    amount: int
    principal: int
    apr_bps: int
    origination_fee: int


@dataclass(frozen=True)
class LoanRepaid:
    loan_id: int
    amount: int
    interest_paid: int
    principal_paid: int


@dataclass(frozen=True)
class LoanForgiven:
    loan_id: int
    principal_forgiven: int


@dataclass(frozen=True)
class LoanClosed:
    loan_id: int


@dataclass(frozen=True)
class LoanNFTTransferred:
    loan_id: int
    from_address: str
    to_address: str


@dataclass(frozen=True)
class CreditLineUpdated:
    lender: str
    borrower: str
    token: str
    credit_limit: int
    min_apr: int
    max_apr: int
    origination_fee_bps: int


EventPayload = Union[
    LoanCreated,
    LoanRepaid,
    LoanForgiven,
    LoanClosed,
    LoanNFTTransferred,
    CreditLineUpdated,
]

PAYLOAD_KIND: dict[type, EventKind] = {
    LoanCreated: EventKind.LOAN_CREATED,
    LoanRepaid: EventKind.LOAN_REPAID,
    LoanForgiven: EventKind.LOAN_FORGIVEN,
    LoanClosed: EventKind.LOAN_CLOSED,
    LoanNFTTransferred: EventKind.LOAN_NFT_TRANSFERRED,
    CreditLineUpdated: EventKind.CREDIT_LINE_UPDATED,
}


@dataclass(frozen=True)
class LedgerEvent:
    block_number: int
    log_index: int
    transaction_hash: str
    payload: EventPayload
    timestamp: int = 0

    @property
    def kind(self) -> EventKind:
        return PAYLOAD_KIND[type(self.payload)]

    @property
    def position(self) -> tuple[int, int]:
        """Causal order key."""
        return (self.block_number, self.log_index)

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


# ---------------------------------------------------------------------------
# Contract state snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoanState:
    """``loanById`` + ``getOutstandingBalance`` + ``originalBorrower`` at one block."""

    loan_id: int
    block_number: int
    borrower: str
    lender: str
    token: str
    principal: int
    repaid_principal: int
    forgiven_principal: int
    apr_bps: int
    start_timestamp: int
    last_payment_timestamp: int
    closed: bool
    outstanding_principal: int
    accrued_interest: int
    original_borrower: str = ""


@dataclass(frozen=True)
class CreditLineState:
    lender: str
    borrower: str
    token: str
    block_number: int
    credit_limit: int
    min_apr: int
    max_apr: int
    origination_fee_bps: int


@dataclass(frozen=True)
class TokenBalance:
    token: Token
    balance: int


# ---------------------------------------------------------------------------
# Reconciled positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Loan:
    id: int
    lender: str
    borrower: str
    original_borrower: str
    token: str
    principal: int
    repaid_principal: int = 0
    forgiven_principal: int = 0
    accrued_interest_paid: int = 0
    accrued_interest: int = 0
    interest_rate_bps: int = 0
    created_at: int = 0
    last_payment_at: int = 0
    payment_times: tuple[int, ...] = ()
    is_active: bool = True

    @property
    def outstanding_principal(self) -> int:
        return max(self.principal - self.repaid_principal - self.forgiven_principal, 0)

    @property
    def outstanding_balance(self) -> int:
        return self.outstanding_principal + self.accrued_interest

    @property
    def credit_key(self) -> tuple[str, str, str]:
        """The (lender, borrower, token) credit line this loan was drawn against."""
        return (self.lender, self.original_borrower, self.token)


@dataclass(frozen=True)
class CreditLine:
    lender: str
    borrower: str
    token: str
    credit_limit: int
    min_apr: int
    max_apr: int
    origination_fee_bps: int = 0
    utilised_credit: int = 0
    updated_block: int = 0

    @property
    def is_active(self) -> bool:
        return self.credit_limit > 0

    @property
    def available_credit(self) -> int:
        return max(self.credit_limit - self.utilised_credit, 0)

    @property
    def utilisation_bps(self) -> int:
        return ratio_bps(self.utilised_credit, self.credit_limit)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.lender, self.borrower, self.token)


# ---------------------------------------------------------------------------
# Derived analytics
# ---------------------------------------------------------------------------


class TrustLevel(str, Enum):
    NEW = "New"
    TRUSTED = "Trusted"
    VERIFIED = "Verified"


class RiskScore(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class PaymentHealth(str, Enum):
    NEW = "New"
    GOOD = "Good"
    WARNING = "Warning"
    POOR = "Poor"


@dataclass(frozen=True)
class Relationship:
    address: str
    trust_level: TrustLevel
    total_loans: int
    payment_score: int | None
    credit_given: dict[str, int] = field(default_factory=dict)
    credit_received: dict[str, int] = field(default_factory=dict)
    volume: dict[str, int] = field(default_factory=dict)
    avg_apr_bps: int = 0
    payment_history: tuple[bool, ...] = ()


@dataclass(frozen=True)
class PortfolioStats:
    total_lent: dict[str, int] = field(default_factory=dict)
    total_borrowed: dict[str, int] = field(default_factory=dict)
    interest_earned: dict[str, int] = field(default_factory=dict)
    interest_paid: dict[str, int] = field(default_factory=dict)
    active_loans: int = 0
    relationship_count: int = 0
    avg_utilisation_bps: int = 0
    lent_apy_bps: int = 0
    borrowed_apy_bps: int = 0
    net_apy_bps: int = 0
    risk_score: RiskScore = RiskScore.LOW
    avg_loan_duration_days: int = 0
    annualized_return_bps: dict[str, int] = field(default_factory=dict)
    yield_bps: dict[str, int] = field(default_factory=dict)
    payment_health: PaymentHealth = PaymentHealth.NEW


# ---------------------------------------------------------------------------
# Presentation boundary
# ---------------------------------------------------------------------------


class ViewKind(str, Enum):
    LOANS = "loans"
    CREDIT_LINES = "creditLines"
    RELATIONSHIPS = "relationships"
    PORTFOLIO = "portfolio"
    TOKEN_BALANCE = "tokenBalance"
    POOL_POSITION = "poolPosition"


class ViewStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ViewResult:
    view: ViewKind
    status: ViewStatus
    value: Any = None
    block_number: int = 0
    error: str = ""
    # Non-fatal gaps behind an OK value, e.g. one event kind that failed to load
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is ViewStatus.OK

    @property
    def degraded(self) -> bool:
        return self.ok and bool(self.warnings)
