"""Pure parsing of raw vault logs into typed ledger events, no I/O."""
from __future__ import annotations

from typing import Any

from ..chains.evm.abi import EVENTS_BY_TOPIC, EventSpec
from ..errors import DecodeError
from ..models import (
    CreditLineUpdated,
    EventKind,
    EventPayload,
    LedgerEvent,
    LoanClosed,
    LoanCreated,
    LoanForgiven,
    LoanNFTTransferred,
    LoanRepaid,
)


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity ("0x1a" or int) into an int.

    Examples:
        "0x1a" → 26
        7 → 7
    """
    if isinstance(value, bool):
        raise DecodeError(f"Not a quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError as e:
            raise DecodeError(f"Not a quantity: {value!r}") from e
    raise DecodeError(f"Not a quantity: {value!r}")


def _build_payload(spec: EventSpec, values: dict[str, Any]) -> EventPayload:
    kind = spec.kind
    if kind is EventKind.LOAN_CREATED:
        return LoanCreated(
            loan_id=values["loanId"],
            borrower=values["borrower"],
            lender=values["lender"],
            token=values["token"],
            amount=values["amount"],
            principal=values["principal"],
            apr_bps=values["apr"],
            origination_fee=values["originationFee"],
        )
    if kind is EventKind.LOAN_REPAID:
        return LoanRepaid(
            loan_id=values["loanId"],
            amount=values["amount"],
            interest_paid=values["interestPaid"],
            principal_paid=values["principalPaid"],
        )
    if kind is EventKind.LOAN_FORGIVEN:
        return LoanForgiven(
            loan_id=values["loanId"], principal_forgiven=values["amount"]
        )
    if kind is EventKind.LOAN_CLOSED:
        return LoanClosed(loan_id=values["loanId"])
    if kind is EventKind.LOAN_NFT_TRANSFERRED:
        return LoanNFTTransferred(
            loan_id=values["tokenId"],
            from_address=values["from"],
            to_address=values["to"],
        )
    if kind is EventKind.CREDIT_LINE_UPDATED:
        return CreditLineUpdated(
            lender=values["lender"],
            borrower=values["borrower"],
            token=values["token"],
            credit_limit=values["creditLimit"],
            min_apr=values["minAPR"],
            max_apr=values["maxAPR"],
            origination_fee_bps=values["originationFee"],
        )
    raise DecodeError(f"Unsupported event kind {kind}")


def decode_log(raw: dict[str, Any], timestamp: int | None = None) -> LedgerEvent:
    """Validate one ``eth_getLogs`` entry into a :class:`LedgerEvent`.

    Raises:
        DecodeError: unknown topic, wrong topic count, bad ABI data or
            missing positional fields.
    """
    if not isinstance(raw, dict):
        raise DecodeError(f"Log entry is not an object: {raw!r}")

    topics = raw.get("topics") or []
    if not topics:
        raise DecodeError("Log has no topics")

    spec = EVENTS_BY_TOPIC.get(str(topics[0]).lower())
    if spec is None:
        raise DecodeError(f"Unknown event topic {topics[0]}")

    try:
        block_number = parse_quantity(raw["blockNumber"])
        log_index = parse_quantity(raw["logIndex"])
        tx_hash = str(raw["transactionHash"]).lower()
    except KeyError as e:
        raise DecodeError(f"{spec.name} log missing field {e}") from e

    values = spec.decode_log(topics, raw.get("data", "0x"))
    payload = _build_payload(spec, values)

    if timestamp is None:
        block_ts = raw.get("blockTimestamp")
        timestamp = parse_quantity(block_ts) if block_ts is not None else 0

    return LedgerEvent(
        block_number=block_number,
        log_index=log_index,
        transaction_hash=tx_hash,
        payload=payload,
        timestamp=timestamp,
    )


def loan_id_of(event: LedgerEvent) -> int | None:
    """Loan id an event refers to, or None for credit-line events."""
    return getattr(event.payload, "loan_id", None)
