"""In-memory stand-in for the chain client used by integration tests."""
from __future__ import annotations

import asyncio
from typing import Any, Sequence

from eth_abi import encode
from eth_utils import encode_hex

from debtvault.chains.evm.abi import FunctionSpec
from debtvault.errors import RpcError

from .sample_data import T0


def _block(tag: int | str, head: int) -> int:
    if isinstance(tag, int):
        return tag
    return 0 if tag == "earliest" else head


def _topic_matches(wanted: Any, actual: str | None) -> bool:
    if wanted is None:
        return True
    if actual is None:
        return False
    if isinstance(wanted, list):
        return actual.lower() in [w.lower() for w in wanted]
    return actual.lower() == wanted.lower()


class FakeChain:
    """Serves ``eth_getLogs`` from a list of raw logs and ``eth_call`` from a table.

    ``log_failures`` maps topic0 to the exception raised by queries for it;
    ``call_failures`` maps a contract address to the error returned in place
    for every call against it.
    """

    def __init__(self, head: int = 200) -> None:
        self.head = head
        self.logs: list[dict[str, Any]] = []
        self.calls: dict[tuple[str, str], str] = {}
        self.log_failures: dict[str, Exception] = {}
        self.call_failures: dict[str, Exception] = {}
        self.log_queries: list[tuple[list[Any], int | str, int | str]] = []
        self.timestamp_requests: list[int] = []
        self.call_blocks: list[int | str] = []
        self.gate: asyncio.Event | None = None
        self.native_balances: dict[str, int] = {}

    def set_call(self, to: str, spec: FunctionSpec, args: Sequence[Any],
                 outputs: Sequence[Any]) -> None:
        data = spec.encode_call(*args)
        self.calls[(to.lower(), data)] = encode_hex(encode(list(spec.outputs), list(outputs)))

    async def block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_requests.append(block_number)
        return T0 + block_number

    async def get_logs(self, address: str, topics: list[Any],
                       from_block: int | str = "earliest",
                       to_block: int | str = "latest") -> list[dict[str, Any]]:
        self.log_queries.append((topics, from_block, to_block))
        if self.gate is not None:
            await self.gate.wait()
        if topics[0] in self.log_failures:
            raise self.log_failures[topics[0]]

        low, high = _block(from_block, self.head), _block(to_block, self.head)
        matched = []
        for log in self.logs:
            if log["address"].lower() != address.lower():
                continue
            if not low <= int(log["blockNumber"], 16) <= high:
                continue
            log_topics = log["topics"]
            if all(
                _topic_matches(
                    wanted, log_topics[i] if i < len(log_topics) else None
                )
                for i, wanted in enumerate(topics)
            ):
                matched.append(log)
        return matched

    def _reply(self, to: str, data: str) -> Any:
        if to.lower() in self.call_failures:
            return self.call_failures[to.lower()]
        try:
            return self.calls[(to.lower(), data)]
        except KeyError:
            return RpcError("execution reverted", 3)

    async def get_balance(self, address: str, block: int | str = "latest") -> int:
        return self.native_balances.get(address.lower(), 0)

    async def eth_call(self, to: str, data: str, block: int | str = "latest") -> str:
        reply = self._reply(to, data)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def eth_call_many(self, calls: Sequence[tuple[str, str]],
                            block: int | str = "latest") -> list[Any]:
        self.call_blocks.append(block)
        return [self._reply(to, data) for to, data in calls]
