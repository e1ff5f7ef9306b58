"""Contract state reader: batched point-in-time vault and ERC-20 reads."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from ..chains.evm.abi import (
    CREDIT_LINES,
    ERC20_ALLOWANCE,
    ERC20_BALANCE_OF,
    ERC20_DECIMALS,
    GET_OUTSTANDING_BALANCE,
    LENDER_DEPOSITS,
    LOAN_BY_ID,
    ORIGINAL_BORROWER,
    FunctionSpec,
)
from ..errors import DebtVaultError, DecodeError
from ..interfaces.chain import ChainClient
from ..models import CreditLineState, LoanState, Token, TokenBalance, TokenRegistry

logger = logging.getLogger(__name__)

BlockTag = int | str


class VaultStateReader:
    """Reads vault and token state pinned to one block per call.

    Multi-item reads return ``{key: value_or_error}``: one failing item never
    hides the others.
    """

    def __init__(self, client: ChainClient, vault_address: str) -> None:
        self.client = client
        self.vault_address = vault_address.lower()

    async def _call_many(
        self, calls: Sequence[tuple[str, FunctionSpec, tuple[Any, ...]]], block: BlockTag
    ) -> list[Any]:
        """Batch ``eth_call`` and decode each reply; errors returned in place."""
        replies = await self.client.eth_call_many(
            [(to, spec.encode_call(*args)) for to, spec, args in calls], block
        )
        decoded: list[Any] = []
        for (_, spec, _), reply in zip(calls, replies):
            if isinstance(reply, DebtVaultError):
                decoded.append(reply)
                continue
            try:
                decoded.append(spec.decode_output(reply))
            except DecodeError as e:
                decoded.append(e)
        return decoded

    async def loan_states(
        self, loan_ids: Iterable[int], block: BlockTag
    ) -> dict[int, LoanState | DebtVaultError]:
        ids = list(loan_ids)
        if not ids:
            return {}

        calls = []
        for loan_id in ids:
            calls.append((self.vault_address, LOAN_BY_ID, (loan_id,)))
            calls.append((self.vault_address, GET_OUTSTANDING_BALANCE, (loan_id,)))
            calls.append((self.vault_address, ORIGINAL_BORROWER, (loan_id,)))
        replies = await self._call_many(calls, block)
        block_number = block if isinstance(block, int) else 0

        states: dict[int, LoanState | DebtVaultError] = {}
        for i, loan_id in enumerate(ids):
            loan, balance, original = replies[3 * i : 3 * i + 3]
            failed = next(
                (r for r in (loan, balance, original) if isinstance(r, DebtVaultError)),
                None,
            )
            if failed is not None:
                logger.warning("State read for loan %d failed: %s", loan_id, failed)
                states[loan_id] = failed
                continue

            (
                borrower, lender, token, principal, repaid, forgiven,
                apr, start, last_payment, closed,
            ) = loan
            outstanding, interest = balance
            states[loan_id] = LoanState(
                loan_id=loan_id,
                block_number=block_number,
                borrower=borrower,
                lender=lender,
                token=token,
                principal=principal,
                repaid_principal=repaid,
                forgiven_principal=forgiven,
                apr_bps=apr,
                start_timestamp=start,
                last_payment_timestamp=last_payment,
                closed=closed,
                outstanding_principal=outstanding,
                accrued_interest=interest,
                original_borrower=original[0],
            )
        return states

    async def credit_line_states(
        self, triples: Iterable[tuple[str, str, str]], block: BlockTag
    ) -> dict[tuple[str, str, str], CreditLineState | DebtVaultError]:
        keys = [
            (lender.lower(), borrower.lower(), token.lower())
            for lender, borrower, token in triples
        ]
        if not keys:
            return {}

        replies = await self._call_many(
            [(self.vault_address, CREDIT_LINES, key) for key in keys], block
        )
        block_number = block if isinstance(block, int) else 0

        states: dict[tuple[str, str, str], CreditLineState | DebtVaultError] = {}
        for key, reply in zip(keys, replies):
            if isinstance(reply, DebtVaultError):
                states[key] = reply
                continue
            limit, min_apr, max_apr, fee = reply
            lender, borrower, token = key
            states[key] = CreditLineState(
                lender=lender,
                borrower=borrower,
                token=token,
                block_number=block_number,
                credit_limit=limit,
                min_apr=min_apr,
                max_apr=max_apr,
                origination_fee_bps=fee,
            )
        return states

    async def lender_deposits(
        self, account: str, tokens: Iterable[Token], block: BlockTag
    ) -> dict[str, TokenBalance | DebtVaultError]:
        """Pool position: the account's deposited balance per token."""
        token_list = list(tokens)
        replies = await self._call_many(
            [
                (self.vault_address, LENDER_DEPOSITS, (account.lower(), t.address))
                for t in token_list
            ],
            block,
        )
        return self._balances(token_list, replies)

    async def token_balances(
        self, account: str, tokens: Iterable[Token], block: BlockTag
    ) -> dict[str, TokenBalance | DebtVaultError]:
        token_list = list(tokens)
        replies = await self._call_many(
            [(t.address, ERC20_BALANCE_OF, (account.lower(),)) for t in token_list],
            block,
        )
        return self._balances(token_list, replies)

    async def native_balance(
        self, account: str, native: Token, block: BlockTag
    ) -> TokenBalance:
        balance = await self.client.get_balance(account.lower(), block)
        return TokenBalance(token=native, balance=balance)

    @staticmethod
    def _balances(
        tokens: list[Token], replies: list[Any]
    ) -> dict[str, TokenBalance | DebtVaultError]:
        balances: dict[str, TokenBalance | DebtVaultError] = {}
        for token, reply in zip(tokens, replies):
            if isinstance(reply, DebtVaultError):
                logger.warning("Balance read for %s failed: %s", token.symbol, reply)
                balances[token.address] = reply
            else:
                balances[token.address] = TokenBalance(token=token, balance=reply[0])
        return balances

    async def allowance(
        self, token: str, owner: str, spender: str | None = None, block: BlockTag = "latest"
    ) -> int:
        data = ERC20_ALLOWANCE.encode_call(
            owner.lower(), (spender or self.vault_address).lower()
        )
        (value,) = ERC20_ALLOWANCE.decode_output(
            await self.client.eth_call(token.lower(), data, block)
        )
        return value

    async def token_decimals(self, token: str) -> int:
        (value,) = ERC20_DECIMALS.decode_output(
            await self.client.eth_call(token.lower(), ERC20_DECIMALS.encode_call())
        )
        return value

    async def verify_token_registry(
        self, registry: TokenRegistry
    ) -> dict[str, int | DebtVaultError]:
        """Tokens whose on-chain ``decimals()`` disagrees with configuration.

        Returns ``{address: onchain_decimals}`` for mismatches and
        ``{address: error}`` for tokens that could not be read.
        """
        tokens = list(registry)
        replies = await self._call_many(
            [(t.address, ERC20_DECIMALS, ()) for t in tokens], "latest"
        )
        mismatches: dict[str, int | DebtVaultError] = {}
        for token, reply in zip(tokens, replies):
            if isinstance(reply, DebtVaultError):
                logger.warning("decimals() for %s failed: %s", token.symbol, reply)
                mismatches[token.address] = reply
            elif reply[0] != token.decimals:
                logger.warning(
                    "Token %s configured with %d decimals, chain reports %d",
                    token.symbol, token.decimals, reply[0],
                )
                mismatches[token.address] = reply[0]
        return mismatches
