"""EVM JSON-RPC read client with bounded retry."""
from __future__ import annotations

import asyncio
import itertools
import logging
import ssl
from typing import Any, Sequence

import aiohttp
import certifi

from ...config import ChainConfig
from ...errors import RpcError, TransportError

logger = logging.getLogger(__name__)

BlockTag = int | str


def to_block_param(block: BlockTag) -> str:
    """Render a block number or tag ("latest", "earliest") for JSON-RPC."""
    if isinstance(block, int):
        return hex(block)
    return block


class EvmClient:
    """Read-only JSON-RPC client against one canonical endpoint.

    One ``aiohttp`` session is shared by every caller; reads may be issued
    concurrently without coordination.
    """

    def __init__(self, config: ChainConfig) -> None:
        self.rpc_url = config.rpc_url
        self.timeout = config.rpc_timeout
        self.max_retries = config.max_retries
        self.retry_delay = config.retry_delay_seconds
        self._session: aiohttp.ClientSession | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> EvmClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, payload: Any) -> Any:
        """POST a JSON-RPC payload, retrying transport failures with a fixed delay."""
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                session = self._get_session()
                async with session.post(
                    self.rpc_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        raise TransportError(f"HTTP {response.status}")
                    return await response.json(content_type=None)
            except (
                aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError, ValueError
            ) as e:
                last_error = e
                logger.warning(
                    "RPC attempt %d/%d to %s failed: %s",
                    attempt, self.max_retries, self.rpc_url, e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        raise TransportError(
            f"RPC failed after {self.max_retries} attempts. Last error: {last_error}"
        )

    @staticmethod
    def _unwrap(reply: Any) -> Any:
        if not isinstance(reply, dict):
            raise TransportError(f"Malformed JSON-RPC reply: {reply!r}")
        if "error" in reply and reply["error"]:
            error = reply["error"]
            if isinstance(error, dict):
                raise RpcError(str(error.get("message", error)), error.get("code"))
            raise RpcError(str(error))
        return reply.get("result")

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Single JSON-RPC call; returns the ``result`` member."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        return self._unwrap(await self._post(payload))

    async def batch_call(
        self, requests: Sequence[tuple[str, list[Any]]]
    ) -> list[Any]:
        """One JSON-RPC batch; results in request order, per-item errors in place."""
        if not requests:
            return []

        ids = [next(self._ids) for _ in requests]
        payload = [
            {"jsonrpc": "2.0", "id": rid, "method": method, "params": params}
            for rid, (method, params) in zip(ids, requests)
        ]
        replies = await self._post(payload)
        if not isinstance(replies, list):
            # Some nodes answer a batch with a single error object
            self._unwrap(replies)
            raise TransportError(f"Batch reply is not a list: {replies!r}")

        by_id = {r.get("id"): r for r in replies if isinstance(r, dict)}
        results: list[Any] = []
        for rid in ids:
            reply = by_id.get(rid)
            if reply is None:
                results.append(TransportError(f"No reply for batch item {rid}"))
                continue
            try:
                results.append(self._unwrap(reply))
            except RpcError as e:
                results.append(e)
        return results

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def block_number(self) -> int:
        return int(await self.rpc_call("eth_blockNumber", []), 16)

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.rpc_call(
            "eth_getBlockByNumber", [to_block_param(block_number), False]
        )
        if not block:
            raise TransportError(f"Block {block_number} not available")
        return int(block["timestamp"], 16)

    async def get_balance(self, address: str, block: BlockTag = "latest") -> int:
        """Native coin balance in wei."""
        return int(
            await self.rpc_call("eth_getBalance", [address, to_block_param(block)]), 16
        )

    async def eth_call(self, to: str, data: str, block: BlockTag = "latest") -> str:
        return await self.rpc_call(
            "eth_call", [{"to": to, "data": data}, to_block_param(block)]
        )

    async def eth_call_many(
        self, calls: Sequence[tuple[str, str]], block: BlockTag = "latest"
    ) -> list[Any]:
        """Batch of ``eth_call`` (to, data) pairs pinned to one block."""
        tag = to_block_param(block)
        return await self.batch_call(
            [("eth_call", [{"to": to, "data": data}, tag]) for to, data in calls]
        )

    async def get_logs(
        self,
        address: str,
        topics: list[Any],
        from_block: BlockTag = "earliest",
        to_block: BlockTag = "latest",
    ) -> list[dict[str, Any]]:
        result = await self.rpc_call(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "topics": topics,
                    "fromBlock": to_block_param(from_block),
                    "toBlock": to_block_param(to_block),
                }
            ],
        )
        return result or []
