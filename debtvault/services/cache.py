"""Read-model cache: per-(account, view) snapshots with stale-while-revalidate."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from ..models import ViewKind

logger = logging.getLogger(__name__)

Refresh = Callable[[], Awaitable[Any]]

# Views touched by a confirmed vault or token transaction
TRANSACTION_VIEWS: tuple[ViewKind, ...] = (
    ViewKind.POOL_POSITION,
    ViewKind.TOKEN_BALANCE,
    ViewKind.CREDIT_LINES,
    ViewKind.LOANS,
    ViewKind.RELATIONSHIPS,
    ViewKind.PORTFOLIO,
)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    block_number: int
    computed_at: float


class ReadModelCache:
    """Immutable snapshots keyed by ``(account, view)``.

    Entries are replaced whole, never mutated. Background refreshes are
    single-flight per account.
    """

    def __init__(
        self,
        staleness_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.staleness_seconds = staleness_seconds
        self._clock = clock
        self._entries: dict[tuple[str, ViewKind], CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def get(self, account: str, view: ViewKind) -> CacheEntry | None:
        return self._entries.get((account.lower(), view))

    def put(
        self, account: str, view: ViewKind, value: Any, block_number: int = 0
    ) -> CacheEntry:
        entry = CacheEntry(value=value, block_number=block_number, computed_at=self._clock())
        self._entries[(account.lower(), view)] = entry
        return entry

    def is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.computed_at > self.staleness_seconds

    def invalidate(
        self, account: str, views: Iterable[ViewKind] | None = None
    ) -> None:
        """Drop the given views for ``account`` (all of them when ``views`` is None)."""
        account = account.lower()
        if views is None:
            self._inflight.pop(account, None)
            for key in [k for k in self._entries if k[0] == account]:
                del self._entries[key]
            return
        for view in views:
            self._entries.pop((account, view), None)

    def invalidate_after_transaction(self, account: str) -> None:
        self.invalidate(account, TRANSACTION_VIEWS)
        logger.debug(
            "Invalidated %d views for %s after transaction",
            len(TRANSACTION_VIEWS), account,
        )

    def clear(self) -> None:
        self._entries.clear()

    def refreshing(self, account: str) -> bool:
        task = self._inflight.get(account.lower())
        return task is not None and not task.done()

    def _start_refresh(self, account: str, refresh: Refresh) -> asyncio.Task:
        task = self._inflight.get(account)
        if task is None or task.done():
            task = asyncio.create_task(refresh())
            self._inflight[account] = task
            task.add_done_callback(lambda t: self._refresh_done(account, t))
        return task

    def _refresh_done(self, account: str, task: asyncio.Task) -> None:
        if self._inflight.get(account) is task:
            del self._inflight[account]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background refresh failed: %s", error)

    async def read(
        self, account: str, view: ViewKind, refresh: Refresh
    ) -> CacheEntry | None:
        """Return the cached entry, revalidating in the background when stale.

        With no entry at all the refresh is awaited (joining one already in
        flight), so a cold read never returns a placeholder.
        """
        account = account.lower()
        entry = self.get(account, view)
        if entry is None:
            await self._start_refresh(account, refresh)
            return self.get(account, view)

        if self.is_stale(entry):
            logger.debug("%s/%s stale, revalidating", account, view.value)
            self._start_refresh(account, refresh)
        return entry
