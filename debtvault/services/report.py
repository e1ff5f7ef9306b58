"""Text rendering of view results; amounts go through the codec, never floats."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from ..codec import format_amount, format_percent_bps
from ..errors import DebtVaultError
from ..models import (
    CreditLine,
    Loan,
    PortfolioStats,
    Relationship,
    TokenBalance,
    TokenRegistry,
    ViewKind,
    ViewResult,
)

UNAVAILABLE = "⚠️ unavailable"
DEGRADED = "⚠️ degraded"

_TITLES = {
    ViewKind.LOANS: "Loans",
    ViewKind.CREDIT_LINES: "Credit Lines",
    ViewKind.RELATIONSHIPS: "Relationships",
    ViewKind.PORTFOLIO: "Portfolio",
    ViewKind.TOKEN_BALANCE: "Wallet Balances",
    ViewKind.POOL_POSITION: "Pool Position",
}


def format_address(address: str) -> str:
    if len(address) > 16:
        return f"{address[:10]}...{address[-6:]}"
    return address


def now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def format_token_amount(raw: int, token_address: str, registry: TokenRegistry) -> str:
    """Render a raw amount with its token's decimals and symbol.

    Unregistered tokens are shown in raw units next to the short address.
    """
    token = registry.get(token_address)
    if token is None:
        return f"{raw} raw ({format_address(token_address)})"
    return format_amount(raw, token.decimals, token.symbol)


def _per_token(amounts: dict[str, int], registry: TokenRegistry) -> str:
    if not amounts:
        return "0"
    return ", ".join(
        format_token_amount(raw, token, registry) for token, raw in sorted(amounts.items())
    )


def _per_token_bps(rates: dict[str, int], registry: TokenRegistry) -> str:
    if not rates:
        return "n/a"
    parts = []
    for address, bps in sorted(rates.items()):
        token = registry.get(address)
        label = token.symbol if token else format_address(address)
        parts.append(f"{label} {format_percent_bps(bps)}%")
    return ", ".join(parts)


def render_loan(loan: Loan, registry: TokenRegistry) -> str:
    status = "Active" if loan.is_active else "Closed"
    lines = [
        f"#{loan.id} · {status} · APR {format_percent_bps(loan.interest_rate_bps)}%",
        f"  Lender: {format_address(loan.lender)}",
        f"  Borrower: {format_address(loan.borrower)}",
    ]
    if loan.original_borrower != loan.borrower:
        lines.append(f"  Original borrower: {format_address(loan.original_borrower)}")
    lines += [
        f"  Principal: {format_token_amount(loan.principal, loan.token, registry)}",
        f"  Outstanding: {format_token_amount(loan.outstanding_principal, loan.token, registry)}",
        f"  Accrued interest: {format_token_amount(loan.accrued_interest, loan.token, registry)}",
    ]
    return "\n".join(lines)


def render_credit_line(line: CreditLine, registry: TokenRegistry) -> str:
    status = "Active" if line.is_active else "Inactive"
    return (
        f"{format_address(line.lender)} → {format_address(line.borrower)} · {status}\n"
        f"  Limit: {format_token_amount(line.credit_limit, line.token, registry)}\n"
        f"  Used: {format_token_amount(line.utilised_credit, line.token, registry)}"
        f" ({format_percent_bps(line.utilisation_bps)}%)\n"
        f"  Available: {format_token_amount(line.available_credit, line.token, registry)}\n"
        f"  APR: {format_percent_bps(line.min_apr)}% - {format_percent_bps(line.max_apr)}%"
    )


def render_relationship(rel: Relationship, registry: TokenRegistry) -> str:
    score = "n/a" if rel.payment_score is None else f"{rel.payment_score}/100"
    history = "".join("■" if paid else "·" for paid in rel.payment_history)
    return (
        f"{format_address(rel.address)} · {rel.trust_level.value}\n"
        f"  Loans: {rel.total_loans} · Payment score: {score}"
        f" · Avg APR: {format_percent_bps(rel.avg_apr_bps)}%\n"
        f"  Volume: {_per_token(rel.volume, registry)}\n"
        f"  Credit given: {_per_token(rel.credit_given, registry)}\n"
        f"  Credit received: {_per_token(rel.credit_received, registry)}\n"
        f"  History: {history}"
    )


def render_portfolio(stats: PortfolioStats, registry: TokenRegistry) -> str:
    return (
        f"Total lent: {_per_token(stats.total_lent, registry)}\n"
        f"Total borrowed: {_per_token(stats.total_borrowed, registry)}\n"
        f"Interest earned: {_per_token(stats.interest_earned, registry)}\n"
        f"Interest paid: {_per_token(stats.interest_paid, registry)}\n"
        f"Active loans: {stats.active_loans} · Relationships: {stats.relationship_count}\n"
        f"APY lent: {format_percent_bps(stats.lent_apy_bps)}%"
        f" · borrowed: {format_percent_bps(stats.borrowed_apy_bps)}%"
        f" · net: {format_percent_bps(stats.net_apy_bps)}%\n"
        f"Avg utilisation: {format_percent_bps(stats.avg_utilisation_bps)}%\n"
        f"Avg loan duration: {stats.avg_loan_duration_days} days\n"
        f"Yield: {_per_token_bps(stats.yield_bps, registry)}\n"
        f"Annualised return: {_per_token_bps(stats.annualized_return_bps, registry)}\n"
        f"Risk: {stats.risk_score.value} · Payment health: {stats.payment_health.value}"
    )


def render_balance(balance: TokenBalance, registry: TokenRegistry) -> str:
    return f"{balance.token.symbol}: {format_amount(balance.balance, balance.token.decimals)}"


_ITEM_RENDERERS: dict[ViewKind, Callable] = {
    ViewKind.LOANS: render_loan,
    ViewKind.CREDIT_LINES: render_credit_line,
    ViewKind.RELATIONSHIPS: render_relationship,
    ViewKind.TOKEN_BALANCE: render_balance,
    ViewKind.POOL_POSITION: render_balance,
}


def render_view(result: ViewResult, registry: TokenRegistry) -> str:
    """Render one view; an unavailable view shows the indicator, never zeros."""
    header = f"━━ {_TITLES[result.view]} ━━"
    if not result.ok:
        return f"{header}\n{UNAVAILABLE}: {result.error or 'no data'}"

    if result.view is ViewKind.PORTFOLIO:
        body = render_portfolio(result.value, registry)
    else:
        render_item = _ITEM_RENDERERS[result.view]
        items = [render_item(item, registry) for item in result.value]
        body = "\n\n".join(items) if items else "None."
    if result.degraded:
        notes = "\n".join(f"{DEGRADED}: {w}" for w in result.warnings)
        body = f"{notes}\n{body}"
    return f"{header}\n{body}\n\nBlock {result.block_number}"


def render_token_check(
    mismatches: dict[str, int | DebtVaultError], registry: TokenRegistry
) -> str:
    if not mismatches:
        return f"✅ All {len(registry)} configured tokens match on-chain decimals"

    lines = ["🚨 Token registry mismatches:"]
    for address, found in sorted(mismatches.items()):
        token = registry.get(address)
        label = token.symbol if token else format_address(address)
        if isinstance(found, DebtVaultError):
            lines.append(f"  {label}: {UNAVAILABLE} ({found})")
        else:
            expected = token.decimals if token else "?"
            lines.append(f"  {label}: configured {expected}, on-chain {found}")
    return "\n".join(lines)


def render_report(
    account: str, results: list[ViewResult], registry: TokenRegistry
) -> str:
    sections = "\n\n".join(render_view(r, registry) for r in results)
    return (
        f"📊 DebtVault · {format_address(account)}\n"
        f"\n"
        f"{sections}\n"
        f"\n"
        f"{now_str()} UTC"
    )
