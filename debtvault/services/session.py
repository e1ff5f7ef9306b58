"""Account session: one selected account's ledger, positions, analytics and cache."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from ..config import AppConfig
from ..errors import DebtVaultError, StaleSelectionDiscard
from ..interfaces.chain import ChainClient
from ..ledger import LedgerFetchResult, LedgerReader, VaultStateReader
from ..models import (
    ZERO_ADDRESS,
    CreditLineState,
    EventKind,
    LoanState,
    TokenBalance,
    TokenRegistry,
    ViewKind,
    ViewResult,
    ViewStatus,
)
from .aggregator import DAY_SECONDS, build_portfolio_stats, build_relationships
from .cache import ReadModelCache
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

# Loans whose later events are missing still carry chain state read at the
# pinned block, so these kinds only degrade the loan views
LOAN_UPDATE_KINDS = (
    EventKind.LOAN_REPAID,
    EventKind.LOAN_FORGIVEN,
    EventKind.LOAN_CLOSED,
    EventKind.LOAN_NFT_TRANSFERRED,
)


def _unavailable(view: ViewKind, error: str, block_number: int = 0) -> ViewResult:
    return ViewResult(
        view=view, status=ViewStatus.UNAVAILABLE, block_number=block_number, error=error
    )


def _ledger_errors(fetch: LedgerFetchResult, kinds: tuple[EventKind, ...]) -> list[str]:
    return [
        f"{kind.value} events unavailable: {fetch.errors[kind]}"
        for kind in kinds
        if kind in fetch.errors
    ]


def _ledger_error(fetch: LedgerFetchResult, kinds: tuple[EventKind, ...]) -> str | None:
    errors = _ledger_errors(fetch, kinds)
    return errors[0] if errors else None


def _state_error(reply: Any) -> str | None:
    """First failure in a state read: the whole call or one of its items."""
    if isinstance(reply, DebtVaultError):
        return str(reply)
    for value in reply.values():
        if isinstance(value, DebtVaultError):
            return str(value)
    return None


class AccountSession:
    """Explicitly constructed context for the selected account.

    Selecting another account tears down the cache entries and the
    reconciler of the previous one and starts a new generation; results of
    refreshes started under an older generation are discarded.
    """

    def __init__(
        self,
        config: AppConfig,
        client: ChainClient,
        registry: TokenRegistry | None = None,
        clock: Callable[[], float] = time.time,
        cache: ReadModelCache | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self.registry = registry if registry is not None else config.token_registry()
        self.ledger = LedgerReader(
            client, config.vault.address, config.chain.log_chunk_size
        )
        self.state = VaultStateReader(client, config.vault.address)
        self.cache = cache or ReadModelCache(config.cache.staleness_seconds)
        self._clock = clock

        self._account: str | None = None
        self._generation = 0
        self._reconciler = Reconciler()
        self._synced_block: int | None = None

    @property
    def account(self) -> str | None:
        return self._account

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def select_account(self, address: str) -> None:
        address = address.lower()
        if self._account is not None:
            self.cache.invalidate(self._account)
        self._account = address
        self._generation += 1
        self._reconciler = Reconciler()
        self._synced_block = None
        logger.info("Selected account %s (generation %d)", address, self._generation)

    def _ensure_current(self, account: str, generation: int) -> None:
        if account != self._account or generation != self._generation:
            raise StaleSelectionDiscard(
                f"refresh for {account} (generation {generation}) superseded"
            )

    # ------------------------------------------------------------------
    # Refresh cycle
    # ------------------------------------------------------------------

    async def refresh(self) -> dict[ViewKind, ViewResult]:
        """Fetch, reconcile and aggregate, then publish one snapshot per view.

        Returns the published results, or ``{}`` when the account selection
        changed while the refresh was in flight.
        """
        if self._account is None:
            raise DebtVaultError("No account selected")
        account, generation = self._account, self._generation
        reconciler = self._reconciler

        try:
            results, fetch = await self._compute(account, generation, reconciler)
            self._ensure_current(account, generation)
        except StaleSelectionDiscard as e:
            logger.debug("Discarded result: %s", e)
            return {}

        block = fetch.to_block if fetch is not None else 0
        if fetch is not None and not fetch.errors:
            # Failed kinds are fetched again from the same block next time
            self._synced_block = fetch.to_block
        for view, result in results.items():
            self.cache.put(account, view, result, block)
        return results

    async def _compute(
        self, account: str, generation: int, reconciler: Reconciler
    ) -> tuple[dict[ViewKind, ViewResult], LedgerFetchResult | None]:
        from_block: int | str
        if self._synced_block is not None:
            from_block = self._synced_block
        else:
            from_block = self._config.vault.deployment_block or "earliest"

        try:
            fetch = await self.ledger.fetch_events(
                account,
                from_block=from_block,
                known_loan_ids=[loan.id for loan in reconciler.loans()],
            )
        except DebtVaultError as e:
            logger.error("Ledger fetch for %s failed: %s", account, e)
            return {view: _unavailable(view, str(e)) for view in ViewKind}, None
        self._ensure_current(account, generation)

        reconciler.fold(fetch.events)
        block = fetch.to_block
        tokens = list(self.registry)

        loan_states, line_states, balances, native, deposits = await asyncio.gather(
            self.state.loan_states([loan.id for loan in reconciler.loans()], block),
            self.state.credit_line_states(reconciler.credit_line_keys(), block),
            self.state.token_balances(account, tokens, block),
            self.state.native_balance(account, self._config.native_token(), block),
            self.state.lender_deposits(account, tokens, block),
            return_exceptions=True,
        )
        self._ensure_current(account, generation)
        for reply in (loan_states, line_states, balances, native, deposits):
            if isinstance(reply, BaseException) and not isinstance(reply, DebtVaultError):
                raise reply
        if isinstance(balances, dict):
            balances = {ZERO_ADDRESS: native, **balances}

        if not isinstance(loan_states, DebtVaultError):
            for state in loan_states.values():
                if isinstance(state, LoanState):
                    reconciler.apply_loan_state(state)
        if not isinstance(line_states, DebtVaultError):
            for state in line_states.values():
                if isinstance(state, CreditLineState):
                    reconciler.apply_credit_line_state(state)

        return self._build_views(
            account, reconciler, fetch, loan_states, line_states, balances, deposits
        ), fetch

    def _build_views(
        self,
        account: str,
        reconciler: Reconciler,
        fetch: LedgerFetchResult,
        loan_states: Any,
        line_states: Any,
        balances: Any,
        deposits: Any,
    ) -> dict[ViewKind, ViewResult]:
        """Compute every view independently; a failure only affects its own view.

        A missing ``LoanCreated`` query or a failed loan state read blanks the
        loan views. Missing later loan events only mark them degraded.
        """
        block = fetch.to_block
        now = int(self._clock())
        analytics = self._config.analytics
        token_decimals = {t.address: t.decimals for t in self.registry}
        results: dict[ViewKind, ViewResult] = {}

        def publish(
            view: ViewKind,
            error: str | None,
            compute: Callable[[], Any],
            warnings: tuple[str, ...] = (),
        ) -> None:
            if error is None:
                try:
                    results[view] = ViewResult(
                        view=view,
                        status=ViewStatus.OK,
                        value=compute(),
                        block_number=block,
                        warnings=warnings,
                    )
                    if warnings:
                        logger.warning(
                            "View %s for %s degraded: %s",
                            view.value, account, "; ".join(warnings),
                        )
                    return
                except DebtVaultError as e:
                    error = str(e)
            logger.error("View %s for %s unavailable: %s", view.value, account, error)
            results[view] = _unavailable(view, error, block)

        loans_error = (
            _ledger_error(fetch, (EventKind.LOAN_CREATED,)) or _state_error(loan_states)
        )
        loan_warnings = tuple(_ledger_errors(fetch, LOAN_UPDATE_KINDS))
        publish(
            ViewKind.LOANS, loans_error, lambda: tuple(reconciler.loans()), loan_warnings
        )

        lines_error = (
            loans_error
            or _ledger_error(fetch, (EventKind.CREDIT_LINE_UPDATED,))
            or _state_error(line_states)
        )
        publish(
            ViewKind.CREDIT_LINES,
            lines_error,
            lambda: tuple(reconciler.credit_lines()),
            loan_warnings,
        )

        publish(
            ViewKind.RELATIONSHIPS,
            lines_error,
            lambda: tuple(
                build_relationships(
                    account,
                    results[ViewKind.LOANS].value,
                    results[ViewKind.CREDIT_LINES].value,
                    now,
                    analytics.payment_cadence_days * DAY_SECONDS,
                    analytics.history_days,
                )
            ),
            loan_warnings,
        )

        publish(
            ViewKind.PORTFOLIO,
            results[ViewKind.RELATIONSHIPS].error or None,
            lambda: build_portfolio_stats(
                account,
                results[ViewKind.LOANS].value,
                results[ViewKind.CREDIT_LINES].value,
                results[ViewKind.RELATIONSHIPS].value,
                token_decimals,
                now,
            ),
            loan_warnings,
        )

        publish(
            ViewKind.TOKEN_BALANCE,
            _state_error(balances),
            lambda: _sorted_balances(balances),
        )
        publish(
            ViewKind.POOL_POSITION,
            _state_error(deposits),
            lambda: _sorted_balances(deposits),
        )
        return results

    # ------------------------------------------------------------------
    # Presentation boundary
    # ------------------------------------------------------------------

    async def view(self, kind: ViewKind) -> ViewResult:
        """Stale-while-revalidate read of one view for the selected account."""
        account = self._account
        if account is None:
            return _unavailable(kind, "no account selected")

        entry = await self.cache.read(account, kind, self.refresh)
        if entry is None or account != self._account:
            return _unavailable(kind, "not loaded")
        return entry.value

    async def on_transaction_confirmed(self, block_number: int) -> dict[ViewKind, ViewResult]:
        """Invalidate affected views and refresh once the node has the block."""
        account = self._account
        if account is None:
            return {}
        self.cache.invalidate_after_transaction(account)

        for attempt in range(1, self._config.chain.max_retries + 1):
            try:
                head = await self._client.block_number()
            except DebtVaultError as e:
                logger.warning("Block height check %d failed: %s", attempt, e)
                head = -1
            if head >= block_number:
                break
            await asyncio.sleep(self._config.cache.confirmation_delay_seconds)
        else:
            logger.warning(
                "Node has not reached block %d, refreshing anyway", block_number
            )
        return await self.refresh()


def _sorted_balances(balances: dict[str, TokenBalance]) -> tuple[TokenBalance, ...]:
    return tuple(sorted(balances.values(), key=lambda b: b.token.symbol))
