"""Integration tests for the account session refresh cycle."""
from __future__ import annotations

import asyncio
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from debtvault.chains.evm.abi import (
    CREDIT_LINE_UPDATED,
    CREDIT_LINES,
    ERC20_BALANCE_OF,
    GET_OUTSTANDING_BALANCE,
    LENDER_DEPOSITS,
    LOAN_BY_ID,
    LOAN_CREATED,
    LOAN_REPAID,
    ORIGINAL_BORROWER,
    PRINCIPAL_FORGIVEN,
)
from debtvault.config import AppConfig
from debtvault.errors import DebtVaultError, TransportError
from debtvault.models import PaymentHealth, ViewKind, ViewStatus
from debtvault.services.session import AccountSession
from tests.fake_chain import FakeChain
from tests.sample_data import BORROWER, DAY, LENDER, OTHER, T0, USDT, VAULT, WETH

RawLog = Callable[..., dict[str, Any]]


def _created(loan_id: int, borrower: str) -> dict[str, Any]:
    return {
        "loanId": loan_id, "borrower": borrower, "lender": LENDER, "token": USDT,
        "amount": 1_000_000, "principal": 1_000_000, "apr": 1_000, "originationFee": 0,
    }


def _repaid(loan_id: int, principal: int) -> dict[str, Any]:
    return {"loanId": loan_id, "amount": principal, "interestPaid": 0, "principalPaid": principal}


def _seed_state(chain: FakeChain, repaid: int = 400_000) -> None:
    chain.set_call(
        VAULT, LOAN_BY_ID, (1,),
        (BORROWER, LENDER, USDT, 1_000_000, repaid, 0, 1_000, T0, T0 + DAY, False),
    )
    chain.set_call(VAULT, GET_OUTSTANDING_BALANCE, (1,), (1_000_000 - repaid, 1_234))
    chain.set_call(VAULT, ORIGINAL_BORROWER, (1,), (BORROWER,))
    chain.set_call(
        VAULT, LOAN_BY_ID, (2,),
        (OTHER, LENDER, USDT, 1_000_000, 0, 0, 1_000, T0, 0, False),
    )
    chain.set_call(VAULT, GET_OUTSTANDING_BALANCE, (2,), (1_000_000, 0))
    chain.set_call(VAULT, ORIGINAL_BORROWER, (2,), (OTHER,))
    chain.set_call(VAULT, CREDIT_LINES, (LENDER, BORROWER, USDT), (5_000_000, 500, 1_500, 0))
    chain.set_call(USDT, ERC20_BALANCE_OF, (LENDER,), (7_000_000,))
    chain.set_call(WETH, ERC20_BALANCE_OF, (LENDER,), (10**18,))
    chain.set_call(VAULT, LENDER_DEPOSITS, (LENDER, USDT), (2_000_000,))
    chain.set_call(VAULT, LENDER_DEPOSITS, (LENDER, WETH), (0,))
    chain.native_balances[LENDER] = 5 * 10**17


@pytest.fixture()
def chain(make_raw_log: RawLog) -> FakeChain:
    chain = FakeChain(head=200)
    line = {
        "lender": LENDER, "borrower": BORROWER, "token": USDT,
        "creditLimit": 5_000_000, "minAPR": 500, "maxAPR": 1_500, "originationFee": 0,
    }
    chain.logs = [
        make_raw_log(CREDIT_LINE_UPDATED, line, block=101),
        make_raw_log(LOAN_CREATED, _created(1, BORROWER), block=110),
        make_raw_log(LOAN_CREATED, _created(2, OTHER), block=111),
        make_raw_log(LOAN_REPAID, _repaid(1, 400_000), block=120),
    ]
    _seed_state(chain)
    return chain


@pytest.fixture()
def session(sample_app_config: AppConfig, chain: FakeChain) -> AccountSession:
    session = AccountSession(sample_app_config, chain, clock=lambda: T0 + 10 * DAY)
    session.select_account(LENDER)
    return session


class TestRefresh:
    @pytest.mark.asyncio
    async def test_publishes_every_view(self, session: AccountSession, chain: FakeChain) -> None:
        results = await session.refresh()

        assert set(results) == set(ViewKind)
        assert all(r.ok for r in results.values())
        assert {r.block_number for r in results.values()} == {200}
        assert set(chain.call_blocks) == {200}

        loan_1, loan_2 = results[ViewKind.LOANS].value
        assert (loan_1.id, loan_2.id) == (1, 2)
        assert loan_1.outstanding_principal == 600_000
        assert loan_1.accrued_interest == 1_234

        (line,) = results[ViewKind.CREDIT_LINES].value
        assert line.utilised_credit == 600_000

        rels = results[ViewKind.RELATIONSHIPS].value
        assert [r.address for r in rels] == sorted([BORROWER, OTHER])

        portfolio = results[ViewKind.PORTFOLIO].value
        assert portfolio.total_lent == {USDT: 1_600_000}
        assert portfolio.avg_loan_duration_days == 10
        assert portfolio.payment_health is PaymentHealth.GOOD

        balances = results[ViewKind.TOKEN_BALANCE].value
        assert [(b.token.symbol, b.balance) for b in balances] == [
            ("ETH", 5 * 10**17), ("USDT", 7_000_000), ("WETH", 10**18),
        ]
        deposits = results[ViewKind.POOL_POSITION].value
        assert [(b.token.symbol, b.balance) for b in deposits] == [
            ("USDT", 2_000_000), ("WETH", 0),
        ]

    @pytest.mark.asyncio
    async def test_results_cached(self, session: AccountSession) -> None:
        results = await session.refresh()
        entry = session.cache.get(LENDER, ViewKind.LOANS)
        assert entry.value is results[ViewKind.LOANS]
        assert entry.block_number == 200

    @pytest.mark.asyncio
    async def test_no_account_selected(self, sample_app_config: AppConfig, chain: FakeChain) -> None:
        session = AccountSession(sample_app_config, chain)
        with pytest.raises(DebtVaultError, match="No account selected"):
            await session.refresh()
        result = await session.view(ViewKind.LOANS)
        assert result.status is ViewStatus.UNAVAILABLE
        assert result.error == "no account selected"

    @pytest.mark.asyncio
    async def test_incremental_refresh(
        self, session: AccountSession, chain: FakeChain, make_raw_log: RawLog
    ) -> None:
        await session.refresh()
        chain.head = 220
        chain.logs.append(
            make_raw_log(LOAN_REPAID, _repaid(1, 100_000), block=210, timestamp=T0 + 5 * DAY)
        )
        chain.log_queries.clear()
        _seed_state(chain, repaid=500_000)

        results = await session.refresh()

        assert {f for _, f, _ in chain.log_queries} == {200}
        loan_1 = results[ViewKind.LOANS].value[0]
        assert loan_1.repaid_principal == 500_000
        assert loan_1.payment_times == (T0, T0 + 5 * DAY)
        assert results[ViewKind.LOANS].block_number == 220


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_token_balance_failure_isolated(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.call_failures[USDT] = TransportError("token rpc down")
        results = await session.refresh()

        balance = results[ViewKind.TOKEN_BALANCE]
        assert balance.status is ViewStatus.UNAVAILABLE
        assert "token rpc down" in balance.error
        assert balance.value is None
        for view in (ViewKind.LOANS, ViewKind.PORTFOLIO, ViewKind.POOL_POSITION):
            assert results[view].ok

    @pytest.mark.asyncio
    async def test_native_balance_failure_isolated(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.get_balance = AsyncMock(side_effect=TransportError("native down"))
        results = await session.refresh()

        assert results[ViewKind.TOKEN_BALANCE].error == "native down"
        assert results[ViewKind.POOL_POSITION].ok
        assert results[ViewKind.LOANS].ok

    @pytest.mark.asyncio
    async def test_missing_forgiveness_events_degrade_loans(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.log_failures[PRINCIPAL_FORGIVEN.topic0] = TransportError("forgiven logs down")
        results = await session.refresh()

        loans = results[ViewKind.LOANS]
        assert loans.ok
        assert loans.degraded
        assert loans.value[0].outstanding_principal == 600_000
        assert "LoanForgiven events unavailable: forgiven logs down" in loans.warnings
        for view in (ViewKind.CREDIT_LINES, ViewKind.RELATIONSHIPS, ViewKind.PORTFOLIO):
            assert results[view].ok
            assert results[view].warnings == loans.warnings
        assert results[ViewKind.CREDIT_LINES].value[0].utilised_credit == 600_000
        assert not results[ViewKind.TOKEN_BALANCE].degraded

        del chain.log_failures[PRINCIPAL_FORGIVEN.topic0]
        chain.log_queries.clear()
        results = await session.refresh()

        assert {f for _, f, _ in chain.log_queries} == {100}
        assert not any(r.degraded for r in results.values())

    @pytest.mark.asyncio
    async def test_missing_creation_events_blank_loans(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.log_failures[LOAN_CREATED.topic0] = TransportError("created logs down")
        results = await session.refresh()

        for view in (
            ViewKind.LOANS, ViewKind.CREDIT_LINES, ViewKind.RELATIONSHIPS, ViewKind.PORTFOLIO,
        ):
            assert not results[view].ok
            assert "LoanCreated" in results[view].error
        assert results[ViewKind.TOKEN_BALANCE].ok

    @pytest.mark.asyncio
    async def test_loan_state_failure_spreads_to_derived_views(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.calls.pop((VAULT, LOAN_BY_ID.encode_call(2)))
        results = await session.refresh()

        for view in (
            ViewKind.LOANS, ViewKind.CREDIT_LINES, ViewKind.RELATIONSHIPS, ViewKind.PORTFOLIO,
        ):
            assert not results[view].ok
            assert "execution reverted" in results[view].error
        assert results[ViewKind.TOKEN_BALANCE].ok
        assert results[ViewKind.POOL_POSITION].ok

    @pytest.mark.asyncio
    async def test_failed_kind_refetched_from_same_block(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.log_failures[CREDIT_LINE_UPDATED.topic0] = TransportError("logs down")
        results = await session.refresh()

        assert results[ViewKind.LOANS].ok
        assert not results[ViewKind.CREDIT_LINES].ok
        assert "CreditLineUpdated" in results[ViewKind.CREDIT_LINES].error
        assert not results[ViewKind.PORTFOLIO].ok

        del chain.log_failures[CREDIT_LINE_UPDATED.topic0]
        chain.log_queries.clear()
        results = await session.refresh()

        assert {f for _, f, _ in chain.log_queries} == {100}
        assert all(r.ok for r in results.values())

    @pytest.mark.asyncio
    async def test_ledger_unreachable(self, session: AccountSession, chain: FakeChain) -> None:
        chain.block_number = AsyncMock(side_effect=TransportError("down"))
        results = await session.refresh()

        assert set(results) == set(ViewKind)
        assert all(r.status is ViewStatus.UNAVAILABLE for r in results.values())
        assert all(r.error == "down" for r in results.values())


class TestAccountSelection:
    @pytest.mark.asyncio
    async def test_switch_discards_in_flight_refresh(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        chain.gate = asyncio.Event()
        task = asyncio.create_task(session.refresh())
        while not chain.log_queries:
            await asyncio.sleep(0)

        session.select_account(BORROWER)
        chain.gate.set()

        assert await task == {}
        assert session.cache.get(LENDER, ViewKind.LOANS) is None
        assert session.cache.get(BORROWER, ViewKind.LOANS) is None

    @pytest.mark.asyncio
    async def test_switch_clears_previous_account(self, session: AccountSession) -> None:
        await session.refresh()
        generation = session.generation

        session.select_account(BORROWER)

        assert session.account == BORROWER
        assert session.generation == generation + 1
        assert session.cache.get(LENDER, ViewKind.LOANS) is None
        assert session.reconciler.loans() == []


class TestViews:
    @pytest.mark.asyncio
    async def test_cold_read_refreshes(self, session: AccountSession) -> None:
        result = await session.view(ViewKind.PORTFOLIO)
        assert result.ok
        assert result.value.active_loans == 2

    @pytest.mark.asyncio
    async def test_warm_read_served_from_cache(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        await session.refresh()
        queries = len(chain.log_queries)

        result = await session.view(ViewKind.LOANS)

        assert result.ok
        assert len(chain.log_queries) == queries


class TestTransactionConfirmed:
    @pytest.mark.asyncio
    async def test_waits_for_block_then_refreshes(
        self, session: AccountSession, chain: FakeChain
    ) -> None:
        await session.refresh()
        chain.block_number = AsyncMock(side_effect=[199, 205, 205])

        results = await session.on_transaction_confirmed(205)

        assert chain.block_number.await_count == 3
        assert results[ViewKind.LOANS].block_number == 205
        assert session.cache.get(LENDER, ViewKind.LOANS).block_number == 205

    @pytest.mark.asyncio
    async def test_refreshes_even_if_node_lags(
        self, session: AccountSession, chain: FakeChain, caplog: pytest.LogCaptureFixture
    ) -> None:
        results = await session.on_transaction_confirmed(999)

        assert results[ViewKind.LOANS].ok
        assert "has not reached block 999" in caplog.text

    @pytest.mark.asyncio
    async def test_without_account(self, sample_app_config: AppConfig, chain: FakeChain) -> None:
        session = AccountSession(sample_app_config, chain)
        assert await session.on_transaction_confirmed(1) == {}
