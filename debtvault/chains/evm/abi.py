"""Fixed ABI description of the DebtVault contract and the ERC-20 accessors we read.

Only the pieces the read-model needs are described: the lending events, the
ERC-721 ``Transfer`` event (loans are NFTs) and the view functions used for
point-in-time state reads.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
)

from ...errors import DecodeError
from ...models import EventKind


@dataclass(frozen=True)
class AbiParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    name: str
    kind: EventKind
    inputs: tuple[AbiParam, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.inputs)})"

    @property
    def topic0(self) -> str:
        return encode_hex(event_signature_to_log_topic(self.signature))

    def topic_position(self, param_name: str) -> int:
        """Topic slot (1-based) holding an indexed parameter."""
        position = 1
        for param in self.inputs:
            if not param.indexed:
                continue
            if param.name == param_name:
                return position
            position += 1
        raise KeyError(f"{self.name} has no indexed parameter '{param_name}'")

    def decode_log(self, topics: Sequence[str], data: str) -> dict[str, Any]:
        """Decode a raw log into ``{param_name: value}``; addresses lowercased."""
        indexed = [p for p in self.inputs if p.indexed]
        plain = [p for p in self.inputs if not p.indexed]

        if len(topics) != len(indexed) + 1:
            raise DecodeError(
                f"{self.name}: expected {len(indexed) + 1} topics, got {len(topics)}"
            )
        if topics[0].lower() != self.topic0:
            raise DecodeError(f"{self.name}: topic0 mismatch {topics[0]}")

        try:
            values: dict[str, Any] = {}
            for param, topic in zip(indexed, topics[1:]):
                (values[param.name],) = decode([param.type], decode_hex(topic))
            decoded = decode([p.type for p in plain], decode_hex(data or "0x"))
            for param, value in zip(plain, decoded):
                values[param.name] = value
        except (DecodingError, ValueError, TypeError) as e:
            raise DecodeError(f"{self.name}: {e}") from e

        return {k: _normalise(v) for k, v in values.items()}


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> str:
        return encode_hex(function_signature_to_4byte_selector(self.signature))

    def encode_call(self, *args: Any) -> str:
        try:
            return self.selector + encode(list(self.inputs), list(args)).hex()
        except (EncodingError, TypeError, ValueError) as e:
            raise ValueError(f"Cannot encode {self.signature} args {args}: {e}") from e

    def decode_output(self, data: str) -> tuple[Any, ...]:
        try:
            decoded = decode(list(self.outputs), decode_hex(data or "0x"))
        except (DecodingError, ValueError, TypeError) as e:
            raise DecodeError(f"{self.name}: {e}") from e
        return tuple(_normalise(v) for v in decoded)


def _normalise(value: Any) -> Any:
    # eth_abi returns checksummed addresses; everything here compares lowercase
    if isinstance(value, str) and value.startswith("0x"):
        return value.lower()
    return value


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def uint_topic(value: int) -> str:
    return "0x" + format(value, "064x")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

LOAN_CREATED = EventSpec(
    name="LoanCreated",
    kind=EventKind.LOAN_CREATED,
    inputs=(
        AbiParam("loanId", "uint256", indexed=True),
        AbiParam("borrower", "address", indexed=True),
        AbiParam("lender", "address", indexed=True),
        AbiParam("token", "address"),
        AbiParam("amount", "uint256"),
        AbiParam("principal", "uint256"),
        AbiParam("apr", "uint256"),
        AbiParam("originationFee", "uint256"),
    ),
)

LOAN_REPAID = EventSpec(
    name="LoanRepaid",
    kind=EventKind.LOAN_REPAID,
    inputs=(
        AbiParam("loanId", "uint256", indexed=True),
        AbiParam("amount", "uint256"),
        AbiParam("interestPaid", "uint256"),
        AbiParam("principalPaid", "uint256"),
    ),
)

PRINCIPAL_FORGIVEN = EventSpec(
    name="PrincipalForgiven",
    kind=EventKind.LOAN_FORGIVEN,
    inputs=(
        AbiParam("loanId", "uint256", indexed=True),
        AbiParam("amount", "uint256"),
    ),
)

LOAN_CLOSED = EventSpec(
    name="LoanClosed",
    kind=EventKind.LOAN_CLOSED,
    inputs=(AbiParam("loanId", "uint256", indexed=True),),
)

LOAN_NFT_TRANSFER = EventSpec(
    name="Transfer",
    kind=EventKind.LOAN_NFT_TRANSFERRED,
    inputs=(
        AbiParam("from", "address", indexed=True),
        AbiParam("to", "address", indexed=True),
        AbiParam("tokenId", "uint256", indexed=True),
    ),
)

CREDIT_LINE_UPDATED = EventSpec(
    name="CreditLineUpdated",
    kind=EventKind.CREDIT_LINE_UPDATED,
    inputs=(
        AbiParam("lender", "address", indexed=True),
        AbiParam("borrower", "address", indexed=True),
        AbiParam("token", "address", indexed=True),
        AbiParam("creditLimit", "uint256"),
        AbiParam("minAPR", "uint256"),
        AbiParam("maxAPR", "uint256"),
        AbiParam("originationFee", "uint256"),
    ),
)

EVENTS_BY_KIND: dict[EventKind, EventSpec] = {
    spec.kind: spec
    for spec in (
        LOAN_CREATED,
        LOAN_REPAID,
        PRINCIPAL_FORGIVEN,
        LOAN_CLOSED,
        LOAN_NFT_TRANSFER,
        CREDIT_LINE_UPDATED,
    )
}

EVENTS_BY_TOPIC: dict[str, EventSpec] = {
    spec.topic0: spec for spec in EVENTS_BY_KIND.values()
}

# ---------------------------------------------------------------------------
# View functions
# ---------------------------------------------------------------------------

LOAN_BY_ID = FunctionSpec(
    name="loanById",
    inputs=("uint256",),
    outputs=(
        "address",  # borrower
        "address",  # lender
        "address",  # token
        "uint256",  # principal
        "uint256",  # repaidPrincipal
        "uint256",  # forgivenPrincipal
        "uint256",  # apr
        "uint64",  # startTimestamp
        "uint64",  # lastPaymentTimestamp
        "bool",  # closed
    ),
)

GET_OUTSTANDING_BALANCE = FunctionSpec(
    name="getOutstandingBalance",
    inputs=("uint256",),
    outputs=("uint256", "uint256"),
)

ORIGINAL_BORROWER = FunctionSpec(
    name="originalBorrower", inputs=("uint256",), outputs=("address",)
)

CREDIT_LINES = FunctionSpec(
    name="creditLines",
    inputs=("address", "address", "address"),  # lender, borrower, token
    outputs=("uint256", "uint256", "uint256", "uint256"),
)

LENDER_DEPOSITS = FunctionSpec(
    name="lenderDeposits", inputs=("address", "address"), outputs=("uint256",)
)

ERC20_BALANCE_OF = FunctionSpec(
    name="balanceOf", inputs=("address",), outputs=("uint256",)
)

ERC20_ALLOWANCE = FunctionSpec(
    name="allowance", inputs=("address", "address"), outputs=("uint256",)
)

ERC20_DECIMALS = FunctionSpec(name="decimals", inputs=(), outputs=("uint8",))
