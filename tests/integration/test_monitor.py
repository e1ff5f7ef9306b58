"""Integration tests for the Monitor service: full flow against an in-memory chain."""
from __future__ import annotations

import pytest

from debtvault.chains.evm.abi import ERC20_BALANCE_OF, ERC20_DECIMALS, LENDER_DEPOSITS
from debtvault.config import AppConfig
from debtvault.errors import ConfigError
from debtvault.models import ViewKind
from debtvault.services.monitor import Monitor
from debtvault.services.report import UNAVAILABLE
from tests.fake_chain import FakeChain
from tests.sample_data import BORROWER, LENDER, OTHER, USDT, VAULT, WETH


@pytest.fixture()
def chain() -> FakeChain:
    chain = FakeChain(head=300)
    chain.set_call(USDT, ERC20_BALANCE_OF, (LENDER,), (1_500_000,))
    chain.set_call(WETH, ERC20_BALANCE_OF, (LENDER,), (2 * 10**18,))
    chain.set_call(VAULT, LENDER_DEPOSITS, (LENDER, USDT), (250_000,))
    chain.set_call(VAULT, LENDER_DEPOSITS, (LENDER, WETH), (0,))
    return chain


@pytest.fixture()
def monitor(sample_app_config: AppConfig, chain: FakeChain) -> Monitor:
    return Monitor(sample_app_config, client=chain)


class TestResolveAccount:
    def test_label(self, monitor: Monitor) -> None:
        assert monitor.resolve_account("borrower") == BORROWER

    def test_address_lowercased(self, monitor: Monitor) -> None:
        assert monitor.resolve_account(USDT.upper().replace("0X", "0x")) == USDT

    def test_defaults_to_first_configured(self, monitor: Monitor) -> None:
        assert monitor.resolve_account(None) == LENDER

    def test_nothing_configured(self, sample_app_config: AppConfig, chain: FakeChain) -> None:
        config = AppConfig(
            chain=sample_app_config.chain,
            vault=sample_app_config.vault,
            tokens=sample_app_config.tokens,
            accounts=(),
        )
        with pytest.raises(ConfigError, match="No account given"):
            Monitor(config, client=chain).resolve_account(None)


class TestShow:
    @pytest.mark.asyncio
    async def test_balances_report(self, monitor: Monitor) -> None:
        text = await monitor.show((ViewKind.TOKEN_BALANCE, ViewKind.POOL_POSITION), "lender")

        assert "━━ Wallet Balances ━━" in text
        assert "USDT: 1.5" in text
        assert "WETH: 2" in text
        assert "━━ Pool Position ━━" in text
        assert "USDT: 0.25" in text
        assert "Block 300" in text
        assert monitor.session.account == LENDER

    @pytest.mark.asyncio
    async def test_account_without_history(self, monitor: Monitor) -> None:
        text = await monitor.show((ViewKind.LOANS, ViewKind.PORTFOLIO))
        assert "━━ Loans ━━" in text
        assert "None." in text
        assert UNAVAILABLE not in text

    @pytest.mark.asyncio
    async def test_failed_read_shown_as_unavailable(self, monitor: Monitor) -> None:
        # no balance or deposit replies configured for this account
        text = await monitor.show((ViewKind.TOKEN_BALANCE,), OTHER)
        assert UNAVAILABLE in text
        assert "execution reverted" in text

    @pytest.mark.asyncio
    async def test_switching_account_reselects(self, monitor: Monitor) -> None:
        await monitor.show((ViewKind.LOANS,), "lender")
        generation = monitor.session.generation
        await monitor.show((ViewKind.LOANS,), "borrower")

        assert monitor.session.account == BORROWER
        assert monitor.session.generation == generation + 1


class TestVerifyTokens:
    @pytest.mark.asyncio
    async def test_mismatch_reported(self, monitor: Monitor, chain: FakeChain) -> None:
        chain.set_call(USDT, ERC20_DECIMALS, (), (6,))
        chain.set_call(WETH, ERC20_DECIMALS, (), (8,))

        text = await monitor.verify_tokens()

        assert "WETH: configured 18, on-chain 8" in text
        assert "USDT" not in text

    @pytest.mark.asyncio
    async def test_all_match(self, monitor: Monitor, chain: FakeChain) -> None:
        chain.set_call(USDT, ERC20_DECIMALS, (), (6,))
        chain.set_call(WETH, ERC20_DECIMALS, (), (18,))
        assert "All 2 configured tokens match" in await monitor.verify_tokens()
