"""Orchestration for the CLI: one client, one account session, text reports."""
from __future__ import annotations

import asyncio
import logging

from ..chains.evm import EvmClient
from ..config import AppConfig
from ..errors import ConfigError, DebtVaultError
from ..interfaces.chain import ChainClient
from ..models import ViewKind, ViewResult
from .report import render_report, render_token_check
from .session import AccountSession

logger = logging.getLogger(__name__)

SUMMARY_VIEWS = (ViewKind.PORTFOLIO, ViewKind.POOL_POSITION, ViewKind.TOKEN_BALANCE)


class Monitor:
    """Builds the read-model for configured accounts and renders it."""

    def __init__(self, config: AppConfig, client: ChainClient | None = None) -> None:
        self._config = config
        self._client = client if client is not None else EvmClient(config.chain)
        self.session = AccountSession(config, self._client)

    async def close(self) -> None:
        if isinstance(self._client, EvmClient):
            await self._client.close()

    def resolve_account(self, account: str | None) -> str:
        """Explicit address, an account label, or the first configured account."""
        if account:
            for cfg in self._config.accounts:
                if cfg.label == account:
                    return cfg.address
            return account.lower()
        if not self._config.accounts:
            raise ConfigError("No account given and none configured under 'accounts'")
        return self._config.accounts[0].address

    async def show(self, views: tuple[ViewKind, ...], account: str | None = None) -> str:
        address = self.resolve_account(account)
        if self.session.account != address:
            self.session.select_account(address)

        results: list[ViewResult] = []
        for kind in views:
            results.append(await self.session.view(kind))
        return render_report(address, results, self.session.registry)

    async def verify_tokens(self) -> str:
        mismatches = await self.session.state.verify_token_registry(self.session.registry)
        return render_token_check(mismatches, self.session.registry)

    async def run_continuous(
        self, interval_seconds: int | None = None, account: str | None = None
    ) -> None:
        """Refresh and print the portfolio summary forever."""
        interval = interval_seconds or int(self._config.cache.staleness_seconds)
        logger.info("Starting watch loop (refreshing every %d seconds)", interval)

        while True:
            try:
                address = self.resolve_account(account)
                if self.session.account != address:
                    self.session.select_account(address)
                results = await self.session.refresh()
                print(
                    render_report(
                        address,
                        [results[kind] for kind in SUMMARY_VIEWS if kind in results],
                        self.session.registry,
                    )
                )
                await asyncio.sleep(interval)
            except DebtVaultError as e:
                logger.error("Error in watch loop: %s", e)
                await asyncio.sleep(interval)
