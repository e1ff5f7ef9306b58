"""Chain client protocol: the EVM read surface the ledger and state readers use."""
from typing import Any, Protocol, Sequence


class ChainClient(Protocol):
    """Abstract interface for read-only EVM JSON-RPC interactions."""

    async def block_number(self) -> int: ...

    async def get_block_timestamp(self, block_number: int) -> int: ...

    async def get_balance(self, address: str, block: int | str = "latest") -> int: ...

    async def eth_call(self, to: str, data: str, block: int | str = "latest") -> str: ...

    async def eth_call_many(
        self, calls: Sequence[tuple[str, str]], block: int | str = "latest"
    ) -> list[Any]: ...

    async def get_logs(
        self,
        address: str,
        topics: list[Any],
        from_block: int | str = "earliest",
        to_block: int | str = "latest",
    ) -> list[dict[str, Any]]: ...
