"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest
from eth_abi import encode
from eth_utils import encode_hex

from debtvault.chains.evm.abi import EventSpec
from debtvault.config import (
    AccountConfig,
    AnalyticsConfig,
    AppConfig,
    CacheConfig,
    ChainConfig,
    TokenConfig,
    VaultConfig,
)
from debtvault.models import LedgerEvent, Loan, TokenRegistry

from .sample_data import BORROWER, LENDER, T0, USDT, VAULT, WETH


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_url="https://rpc.example.com",
        rpc_timeout=5,
        max_retries=3,
        retry_delay_seconds=0,
        log_chunk_size=2,
    )


@pytest.fixture()
def sample_app_config(sample_chain_config: ChainConfig) -> AppConfig:
    return AppConfig(
        chain=sample_chain_config,
        vault=VaultConfig(address=VAULT, deployment_block=100),
        tokens=(
            TokenConfig(symbol="USDT", address=USDT, decimals=6),
            TokenConfig(symbol="WETH", address=WETH, decimals=18),
        ),
        cache=CacheConfig(staleness_seconds=60, confirmation_delay_seconds=0),
        analytics=AnalyticsConfig(payment_cadence_days=30, history_days=7),
        accounts=(
            AccountConfig(label="lender", address=LENDER),
            AccountConfig(label="borrower", address=BORROWER),
        ),
    )


@pytest.fixture()
def registry(sample_app_config: AppConfig) -> TokenRegistry:
    return sample_app_config.token_registry()


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    content = textwrap.dedent(
        f"""\
        chain:
          rpc_url: "https://rpc.example.com"
          rpc_timeout: 10
          max_retries: 2
          log_chunk_size: 50
        vault:
          address: "0x72F6185DcBb9c8415f01003ACc872f08B44FC292"
          deployment_block: 1234
        tokens:
          - symbol: USDT
            address: "0xbB0D083fb1be0A9f6157ec484b6C79E0A4e31C2e"
            decimals: 6
          - symbol: WETH
            address: "{WETH}"
            decimals: 18
        cache:
          staleness_seconds: 30
        accounts:
          - label: main
            address: "{LENDER}"
        """
    )
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_event() -> Callable[..., LedgerEvent]:
    def _make(payload: Any, block: int, log_index: int = 0, tx: str | None = None,
              timestamp: int = T0) -> LedgerEvent:
        return LedgerEvent(
            block_number=block,
            log_index=log_index,
            transaction_hash=tx or f"0x{block:032x}{log_index:032x}",
            payload=payload,
            timestamp=timestamp,
        )

    return _make


@pytest.fixture()
def make_loan() -> Callable[..., Loan]:
    def _make(loan_id: int = 1, **overrides: Any) -> Loan:
        fields: dict[str, Any] = {
            "id": loan_id,
            "lender": LENDER,
            "borrower": BORROWER,
            "original_borrower": BORROWER,
            "token": USDT,
            "principal": 1_000_000,
            "interest_rate_bps": 1_000,
            "created_at": T0,
        }
        fields.update(overrides)
        return Loan(**fields)

    return _make


# ---------------------------------------------------------------------------
# Raw log factory
# ---------------------------------------------------------------------------


def _topic(abi_type: str, value: Any) -> str:
    return encode_hex(encode([abi_type], [value]))


@pytest.fixture()
def make_raw_log() -> Callable[..., dict[str, Any]]:
    """Build an ``eth_getLogs`` entry for ``spec`` from ``{param: value}``."""

    def _make(spec: EventSpec, values: dict[str, Any], block: int, log_index: int = 0,
              tx: str | None = None, timestamp: int | None = T0) -> dict[str, Any]:
        indexed = [p for p in spec.inputs if p.indexed]
        plain = [p for p in spec.inputs if not p.indexed]
        log = {
            "address": VAULT,
            "topics": [spec.topic0] + [_topic(p.type, values[p.name]) for p in indexed],
            "data": encode_hex(
                encode([p.type for p in plain], [values[p.name] for p in plain])
            ),
            "blockNumber": hex(block),
            "logIndex": hex(log_index),
            "transactionHash": tx or f"0x{block:032x}{log_index:032x}",
        }
        if timestamp is not None:
            log["blockTimestamp"] = hex(timestamp)
        return log

    return _make
