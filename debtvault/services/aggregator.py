"""Relationship & risk aggregation: pure functions over reconciled positions, no I/O."""
from __future__ import annotations

from collections import defaultdict
from itertools import pairwise
from typing import Iterable, Mapping, Sequence

from ..codec import mul_div_floor, normalise, ratio_bps
from ..models import (
    CreditLine,
    Loan,
    PaymentHealth,
    PortfolioStats,
    Relationship,
    RiskScore,
    TrustLevel,
)

DAY_SECONDS = 86_400
YEAR_SECONDS = 365 * DAY_SECONDS

TRUSTED_MIN_SCORE = 70
VERIFIED_MIN_SCORE = 90
VERIFIED_MIN_LOANS = 5
HIGH_UTILISATION_BPS = 8_000

_RISK_TIERS = (RiskScore.LOW, RiskScore.MEDIUM, RiskScore.HIGH)


def counterparty_of(account: str, loan: Loan) -> str | None:
    """The other party of ``loan`` seen from ``account``, or None if unrelated.

    Examples:
        account lent the loan → the current borrower
        account borrowed it (now or originally) → the lender
    """
    account = account.lower()
    if loan.lender == account:
        return loan.borrower
    if loan.borrower == account or loan.original_borrower == account:
        return loan.lender
    return None


def is_on_schedule(loan: Loan, now: int, cadence_seconds: int) -> bool:
    """True when no two payment checkpoints are further apart than the cadence.

    Checkpoints are the creation time, every payment, and ``now`` while the
    loan is still active.
    """
    checkpoints = [loan.created_at, *sorted(loan.payment_times)]
    if loan.is_active:
        checkpoints.append(now)
    return all(b - a <= cadence_seconds for a, b in pairwise(checkpoints))


def payment_score(
    loans: Sequence[Loan], now: int, cadence_seconds: int
) -> int | None:
    """Share of on-schedule loans, 0-100 floored; None without loans."""
    if not loans:
        return None
    on_schedule = sum(1 for loan in loans if is_on_schedule(loan, now, cadence_seconds))
    return on_schedule * 100 // len(loans)


def trust_level(total_loans: int, score: int | None) -> TrustLevel:
    if score is None or total_loans == 0:
        return TrustLevel.NEW
    if total_loans >= VERIFIED_MIN_LOANS and score >= VERIFIED_MIN_SCORE:
        return TrustLevel.VERIFIED
    if score >= TRUSTED_MIN_SCORE:
        return TrustLevel.TRUSTED
    return TrustLevel.NEW


def payment_history(
    loans: Iterable[Loan], now: int, days: int
) -> tuple[bool, ...]:
    """One flag per day, oldest first; the last entry is the day ending at ``now``."""
    history = [False] * days
    for loan in loans:
        for paid_at in loan.payment_times:
            age_days = (now - paid_at) // DAY_SECONDS
            if 0 <= age_days < days:
                history[days - 1 - age_days] = True
    return tuple(history)


def build_relationships(
    account: str,
    loans: Iterable[Loan],
    credit_lines: Iterable[CreditLine],
    now: int,
    cadence_seconds: int,
    history_days: int,
) -> list[Relationship]:
    """One :class:`Relationship` per counterparty, sorted by address."""
    account = account.lower()
    loans_by_party: dict[str, list[Loan]] = defaultdict(list)
    given: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    received: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

    for loan in loans:
        party = counterparty_of(account, loan)
        if party is not None and party != account:
            loans_by_party[party].append(loan)

    for line in credit_lines:
        if not line.is_active:
            continue
        if line.lender == account and line.borrower != account:
            given[line.borrower][line.token] += line.credit_limit
        elif line.borrower == account and line.lender != account:
            received[line.lender][line.token] += line.credit_limit

    relationships: list[Relationship] = []
    for party in sorted(set(loans_by_party) | set(given) | set(received)):
        party_loans = loans_by_party.get(party, [])
        score = payment_score(party_loans, now, cadence_seconds)

        volume: dict[str, int] = defaultdict(int)
        for loan in party_loans:
            volume[loan.token] += loan.principal

        avg_apr = (
            sum(loan.interest_rate_bps for loan in party_loans) // len(party_loans)
            if party_loans
            else 0
        )
        relationships.append(
            Relationship(
                address=party,
                trust_level=trust_level(len(party_loans), score),
                total_loans=len(party_loans),
                payment_score=score,
                credit_given=dict(given.get(party, {})),
                credit_received=dict(received.get(party, {})),
                volume=dict(volume),
                avg_apr_bps=avg_apr,
                payment_history=payment_history(party_loans, now, history_days),
            )
        )
    return relationships


def _weighted_rate(
    loans: Iterable[Loan], token_decimals: Mapping[str, int]
) -> tuple[int, int]:
    """(Σ weight·rate, Σ weight) with outstanding principal scaled to 18 decimals."""
    weighted = 0
    weight = 0
    for loan in loans:
        w = normalise(loan.outstanding_principal, token_decimals.get(loan.token, 18))
        weighted += w * loan.interest_rate_bps
        weight += w
    return weighted, weight


def _lending_returns(
    lent: Sequence[Loan], now: int
) -> tuple[int, dict[str, int], dict[str, int]]:
    """(mean loan age in days, annualised return bps, yield bps) for lent loans.

    Both rates are per token: interest earned over principal lent, the
    annualised one weighted by how long each principal has been out.
    """
    if not lent:
        return 0, {}, {}

    ages = {loan.id: max(now - loan.created_at, 0) for loan in lent}
    principal: dict[str, int] = defaultdict(int)
    principal_seconds: dict[str, int] = defaultdict(int)
    earned: dict[str, int] = defaultdict(int)
    for loan in lent:
        principal[loan.token] += loan.principal
        principal_seconds[loan.token] += loan.principal * ages[loan.id]
        earned[loan.token] += loan.accrued_interest_paid

    yields = {
        token: ratio_bps(earned[token], amount)
        for token, amount in principal.items()
        if amount
    }
    annualised = {
        token: mul_div_floor(earned[token] * YEAR_SECONDS, 10_000, weight)
        for token, weight in principal_seconds.items()
        if weight
    }
    avg_days = sum(ages.values()) // len(lent) // DAY_SECONDS
    return avg_days, annualised, yields


def payment_health(relationships: Sequence[Relationship]) -> PaymentHealth:
    """Tier of the mean payment score across scored counterparties."""
    scores = [r.payment_score for r in relationships if r.payment_score is not None]
    if not scores:
        return PaymentHealth.NEW
    mean = sum(scores) // len(scores)
    if mean >= VERIFIED_MIN_SCORE:
        return PaymentHealth.GOOD
    if mean >= TRUSTED_MIN_SCORE:
        return PaymentHealth.WARNING
    return PaymentHealth.POOR


def build_portfolio_stats(
    account: str,
    loans: Iterable[Loan],
    credit_lines: Iterable[CreditLine],
    relationships: Sequence[Relationship],
    token_decimals: Mapping[str, int] | None = None,
    now: int = 0,
) -> PortfolioStats:
    """Recompute the whole portfolio summary for ``account``."""
    account = account.lower()
    token_decimals = token_decimals or {}
    loans = list(loans)

    lent = [loan for loan in loans if loan.lender == account]
    borrowed = [loan for loan in loans if loan.borrower == account]
    active_lent = [loan for loan in lent if loan.is_active]
    active_borrowed = [loan for loan in borrowed if loan.is_active]

    total_lent: dict[str, int] = defaultdict(int)
    total_borrowed: dict[str, int] = defaultdict(int)
    interest_earned: dict[str, int] = defaultdict(int)
    interest_paid: dict[str, int] = defaultdict(int)
    for loan in active_lent:
        total_lent[loan.token] += loan.outstanding_principal
    for loan in active_borrowed:
        total_borrowed[loan.token] += loan.outstanding_principal
    for loan in lent:
        if loan.accrued_interest_paid:
            interest_earned[loan.token] += loan.accrued_interest_paid
    for loan in borrowed:
        if loan.accrued_interest_paid:
            interest_paid[loan.token] += loan.accrued_interest_paid

    lent_sum, lent_weight = _weighted_rate(active_lent, token_decimals)
    borrowed_sum, borrowed_weight = _weighted_rate(active_borrowed, token_decimals)
    lent_apy = lent_sum // lent_weight if lent_weight else 0
    borrowed_apy = borrowed_sum // borrowed_weight if borrowed_weight else 0
    total_weight = lent_weight + borrowed_weight
    net_apy = (lent_sum - borrowed_sum) // total_weight if total_weight else 0

    own_lines = [
        line
        for line in credit_lines
        if line.is_active and account in (line.lender, line.borrower)
    ]
    avg_utilisation = (
        sum(line.utilisation_bps for line in own_lines) // len(own_lines)
        if own_lines
        else 0
    )

    avg_days, annualised, yields = _lending_returns(lent, now)

    active_ids = {loan.id for loan in active_lent} | {loan.id for loan in active_borrowed}
    return PortfolioStats(
        total_lent=dict(total_lent),
        total_borrowed=dict(total_borrowed),
        interest_earned=dict(interest_earned),
        interest_paid=dict(interest_paid),
        active_loans=len(active_ids),
        relationship_count=len(relationships),
        avg_utilisation_bps=avg_utilisation,
        lent_apy_bps=lent_apy,
        borrowed_apy_bps=borrowed_apy,
        net_apy_bps=net_apy,
        risk_score=risk_score(avg_utilisation, relationships),
        avg_loan_duration_days=avg_days,
        annualized_return_bps=annualised,
        yield_bps=yields,
        payment_health=payment_health(relationships),
    )


def risk_score(
    avg_utilisation_bps: int, relationships: Sequence[Relationship]
) -> RiskScore:
    """Low, escalated one tier for high utilisation and one for mostly-new counterparties."""
    tier = 0
    if avg_utilisation_bps > HIGH_UTILISATION_BPS:
        tier += 1
    new_count = sum(1 for r in relationships if r.trust_level is TrustLevel.NEW)
    if relationships and new_count * 2 > len(relationships):
        tier += 1
    return _RISK_TIERS[min(tier, len(_RISK_TIERS) - 1)]
