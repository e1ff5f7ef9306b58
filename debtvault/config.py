"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import ZERO_ADDRESS, Token, TokenRegistry

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainConfig:
    rpc_url: str = ""
    chain_id: int = 43111
    rpc_timeout: int = 30
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    log_chunk_size: int = 100
    native_symbol: str = "ETH"


@dataclass(frozen=True)
class VaultConfig:
    address: str = ""
    deployment_block: int = 0


@dataclass(frozen=True)
class TokenConfig:
    symbol: str = ""
    address: str = ""
    decimals: int = 18
    name: str = ""


@dataclass(frozen=True)
class CacheConfig:
    staleness_seconds: float = 60.0
    confirmation_delay_seconds: float = 2.0


@dataclass(frozen=True)
class AnalyticsConfig:
    payment_cadence_days: int = 30
    history_days: int = 30


@dataclass(frozen=True)
class AccountConfig:
    label: str = ""
    address: str = ""


@dataclass(frozen=True)
class AppConfig:
    chain: ChainConfig = field(default_factory=ChainConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    tokens: tuple[TokenConfig, ...] = ()
    cache: CacheConfig = field(default_factory=CacheConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    accounts: tuple[AccountConfig, ...] = ()

    def token_registry(self) -> TokenRegistry:
        return TokenRegistry(
            Token(
                address=t.address.lower(),
                symbol=t.symbol,
                decimals=t.decimals,
                name=t.name,
            )
            for t in self.tokens
        )

    def native_token(self) -> Token:
        """The chain's native coin, keyed by the zero address."""
        return Token(address=ZERO_ADDRESS, symbol=self.chain.native_symbol, decimals=18)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_url=raw.get("rpc_url", ""),
        chain_id=int(raw.get("chain_id", 43111)),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        max_retries=int(raw.get("max_retries", 3)),
        retry_delay_seconds=float(raw.get("retry_delay_seconds", 1.0)),
        log_chunk_size=int(raw.get("log_chunk_size", 100)),
        native_symbol=str(raw.get("native_symbol", "ETH")),
    )


def _build_vault(raw: dict[str, Any]) -> VaultConfig:
    return VaultConfig(
        address=str(raw.get("address", "")).lower(),
        deployment_block=int(raw.get("deployment_block", 0)),
    )


def _build_tokens(raw: list[dict[str, Any]]) -> tuple[TokenConfig, ...]:
    tokens: list[TokenConfig] = []
    for t in raw:
        tokens.append(
            TokenConfig(
                symbol=t.get("symbol", ""),
                address=str(t.get("address", "")).lower(),
                decimals=int(t.get("decimals", 18)),
                name=t.get("name", ""),
            )
        )
    return tuple(tokens)


def _build_cache(raw: dict[str, Any]) -> CacheConfig:
    return CacheConfig(
        staleness_seconds=float(raw.get("staleness_seconds", 60.0)),
        confirmation_delay_seconds=float(raw.get("confirmation_delay_seconds", 2.0)),
    )


def _build_analytics(raw: dict[str, Any]) -> AnalyticsConfig:
    return AnalyticsConfig(
        payment_cadence_days=int(raw.get("payment_cadence_days", 30)),
        history_days=int(raw.get("history_days", 30)),
    )


def _build_accounts(raw: list[dict[str, Any]]) -> tuple[AccountConfig, ...]:
    return tuple(
        AccountConfig(
            label=a.get("label", ""),
            address=str(a.get("address", "")).lower(),
        )
        for a in raw
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        chain=_build_chain(raw.get("chain", {})),
        vault=_build_vault(raw.get("vault", {})),
        tokens=_build_tokens(raw.get("tokens", [])),
        cache=_build_cache(raw.get("cache", {})),
        analytics=_build_analytics(raw.get("analytics", {})),
        accounts=_build_accounts(raw.get("accounts", [])),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value))


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.chain.rpc_url:
        raise ConfigError("chain.rpc_url must be configured")
    if cfg.chain.rpc_timeout <= 0:
        raise ConfigError("chain.rpc_timeout must be positive")
    if cfg.chain.max_retries < 1:
        raise ConfigError("chain.max_retries must be at least 1")
    if cfg.chain.log_chunk_size < 1:
        raise ConfigError("chain.log_chunk_size must be at least 1")

    if not is_address(cfg.vault.address):
        raise ConfigError(f"Invalid vault address '{cfg.vault.address}'")

    seen: set[str] = set()
    for token in cfg.tokens:
        if not is_address(token.address):
            raise ConfigError(
                f"Token '{token.symbol}' has invalid address '{token.address}'"
            )
        if not 0 <= token.decimals <= 255:
            raise ConfigError(
                f"Token '{token.symbol}' decimals out of range: {token.decimals}"
            )
        if token.address in seen:
            raise ConfigError(f"Duplicate token address '{token.address}'")
        seen.add(token.address)

    for account in cfg.accounts:
        if not is_address(account.address):
            raise ConfigError(
                f"Account '{account.label}' has invalid address '{account.address}'"
            )
