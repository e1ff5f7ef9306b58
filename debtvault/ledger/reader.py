"""Event ledger reader: fetches, validates, deduplicates and orders vault logs."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from ..chains.evm.abi import (
    CREDIT_LINE_UPDATED,
    EVENTS_BY_KIND,
    LOAN_CREATED,
    LOAN_NFT_TRANSFER,
    EventSpec,
    address_topic,
    uint_topic,
)
from ..errors import DebtVaultError, DecodeError
from ..interfaces.chain import ChainClient
from ..models import ALL_KINDS, EventKind, LedgerEvent, LoanCreated, LoanNFTTransferred
from .parser import decode_log, loan_id_of, parse_quantity

logger = logging.getLogger(__name__)

BlockTag = int | str

# Kinds that are queried per loan id once the account's loans are known
_LOAN_SCOPED_KINDS = (
    EventKind.LOAN_REPAID,
    EventKind.LOAN_FORGIVEN,
    EventKind.LOAN_CLOSED,
    EventKind.LOAN_NFT_TRANSFERRED,
)


@dataclass
class LedgerFetchResult:
    events: list[LedgerEvent] = field(default_factory=list)
    errors: dict[EventKind, str] = field(default_factory=dict)
    to_block: int = 0
    quarantined: int = 0

    @property
    def loan_ids(self) -> set[int]:
        ids = (loan_id_of(e) for e in self.events)
        return {i for i in ids if i is not None}


@dataclass(frozen=True)
class _Query:
    kind: EventKind
    topics: list[Any]


def build_topics(spec: EventSpec, **filters: Any) -> list[Any]:
    """Topic filter for ``spec`` with the given indexed params pinned.

    Unfiltered slots are ``None``; trailing ``None`` slots are dropped.
    """
    positions = {spec.topic_position(name): value for name, value in filters.items()}
    width = max(positions, default=0)
    topics: list[Any] = [spec.topic0] + [None] * width
    for position, value in positions.items():
        topics[position] = value
    return topics


def _chunks(items: Sequence[int], size: int) -> Iterable[list[int]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class LedgerReader:
    """Reads an account's slice of the vault event ledger."""

    def __init__(
        self, client: ChainClient, vault_address: str, log_chunk_size: int = 100
    ) -> None:
        self.client = client
        self.vault_address = vault_address.lower()
        self.log_chunk_size = max(log_chunk_size, 1)

    async def fetch_events(
        self,
        account: str,
        kinds: Iterable[EventKind] = ALL_KINDS,
        from_block: BlockTag = "earliest",
        to_block: BlockTag = "latest",
        known_loan_ids: Iterable[int] = (),
    ) -> LedgerFetchResult:
        """Fetch every event touching ``account`` in ``[from_block, to_block]``.

        ``known_loan_ids`` extends the loan-scoped queries with loans
        discovered by an earlier fetch, so incremental refreshes still see
        repayments on old loans.
        """
        kinds = set(kinds)
        account_topic = address_topic(account)

        if to_block == "latest":
            to_block = await self.client.block_number()
        result = LedgerFetchResult(to_block=int(to_block))
        raw_logs: dict[tuple[str, int], dict[str, Any]] = {}

        # Phase 1: everything discoverable from the account address alone
        phase_one: list[_Query] = []
        if EventKind.LOAN_CREATED in kinds:
            phase_one.append(
                _Query(EventKind.LOAN_CREATED, build_topics(LOAN_CREATED, borrower=account_topic))
            )
            phase_one.append(
                _Query(EventKind.LOAN_CREATED, build_topics(LOAN_CREATED, lender=account_topic))
            )
        if EventKind.CREDIT_LINE_UPDATED in kinds:
            phase_one.append(
                _Query(
                    EventKind.CREDIT_LINE_UPDATED,
                    build_topics(CREDIT_LINE_UPDATED, lender=account_topic),
                )
            )
            phase_one.append(
                _Query(
                    EventKind.CREDIT_LINE_UPDATED,
                    build_topics(CREDIT_LINE_UPDATED, borrower=account_topic),
                )
            )
        if EventKind.LOAN_NFT_TRANSFERRED in kinds or EventKind.LOAN_CREATED in kinds:
            # Loans transferred in are discovered through the NFT transfer
            phase_one.append(
                _Query(
                    EventKind.LOAN_NFT_TRANSFERRED,
                    build_topics(LOAN_NFT_TRANSFER, to=account_topic),
                )
            )

        events = await self._run_queries(phase_one, from_block, to_block, result, raw_logs)

        created_ids = {
            e.payload.loan_id for e in events if isinstance(e.payload, LoanCreated)
        }
        transferred_ids = {
            e.payload.loan_id
            for e in events
            if isinstance(e.payload, LoanNFTTransferred)
        }
        known = set(known_loan_ids)

        # Phase 2: per-loan history, chunked by loan id
        phase_two: list[_Query] = []
        missing_created = sorted(transferred_ids - created_ids - known)
        if EventKind.LOAN_CREATED in kinds and missing_created:
            phase_two.extend(self._loan_queries(EventKind.LOAN_CREATED, missing_created))

        loan_ids = sorted(created_ids | transferred_ids | known)
        if loan_ids:
            for kind in _LOAN_SCOPED_KINDS:
                if kind in kinds:
                    phase_two.extend(self._loan_queries(kind, loan_ids))

        events.extend(
            await self._run_queries(phase_two, from_block, to_block, result, raw_logs)
        )

        if EventKind.LOAN_NFT_TRANSFERRED not in kinds:
            events = [e for e in events if e.kind is not EventKind.LOAN_NFT_TRANSFERRED]

        events = await self._fill_timestamps(events, raw_logs, result)

        unique: dict[tuple[str, int], LedgerEvent] = {}
        for event in events:
            unique.setdefault(event.dedup_key, event)
        result.events = sorted(unique.values(), key=lambda e: e.position)

        logger.info(
            "Fetched %d events for %s up to block %d (%d failed kinds, %d quarantined)",
            len(result.events), account, result.to_block,
            len(result.errors), result.quarantined,
        )
        return result

    def _loan_queries(self, kind: EventKind, loan_ids: Sequence[int]) -> list[_Query]:
        spec = EVENTS_BY_KIND[kind]
        param = "tokenId" if kind is EventKind.LOAN_NFT_TRANSFERRED else "loanId"
        return [
            _Query(kind, build_topics(spec, **{param: [uint_topic(i) for i in chunk]}))
            for chunk in _chunks(loan_ids, self.log_chunk_size)
        ]

    async def _run_queries(
        self,
        queries: list[_Query],
        from_block: BlockTag,
        to_block: BlockTag,
        result: LedgerFetchResult,
        raw_logs: dict[tuple[str, int], dict[str, Any]],
    ) -> list[LedgerEvent]:
        if not queries:
            return []

        replies = await asyncio.gather(
            *(
                self.client.get_logs(self.vault_address, q.topics, from_block, to_block)
                for q in queries
            ),
            return_exceptions=True,
        )

        events: list[LedgerEvent] = []
        for query, reply in zip(queries, replies):
            if isinstance(reply, DebtVaultError):
                logger.error("Log query for %s failed: %s", query.kind.value, reply)
                result.errors.setdefault(query.kind, str(reply))
                continue
            if isinstance(reply, BaseException):
                raise reply

            for raw in reply:
                try:
                    event = decode_log(raw)
                except DecodeError as e:
                    result.quarantined += 1
                    logger.warning("Quarantined malformed %s log: %s", query.kind.value, e)
                    continue
                raw_logs[event.dedup_key] = raw
                events.append(event)
        return events

    async def _fill_timestamps(
        self,
        events: list[LedgerEvent],
        raw_logs: dict[tuple[str, int], dict[str, Any]],
        result: LedgerFetchResult,
    ) -> list[LedgerEvent]:
        """Fetch block timestamps once per block for logs the node didn't annotate."""
        blocks = sorted(
            {
                e.block_number
                for e in events
                if raw_logs.get(e.dedup_key, {}).get("blockTimestamp") is None
            }
        )
        if not blocks:
            return events

        replies = await asyncio.gather(
            *(self.client.get_block_timestamp(b) for b in blocks),
            return_exceptions=True,
        )
        timestamps: dict[int, int] = {}
        for block, reply in zip(blocks, replies):
            if isinstance(reply, DebtVaultError):
                logger.error("Timestamp for block %d unavailable: %s", block, reply)
                continue
            if isinstance(reply, BaseException):
                raise reply
            timestamps[block] = parse_quantity(reply)

        filled: list[LedgerEvent] = []
        for event in events:
            if event.block_number in timestamps:
                event = dataclasses.replace(event, timestamp=timestamps[event.block_number])
            elif event.block_number in blocks:
                result.errors.setdefault(
                    event.kind, f"block {event.block_number} timestamp unavailable"
                )
            filled.append(event)
        return filled
