"""Position reconciler: folds ordered ledger events and state snapshots into positions."""
from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from ..errors import DuplicateEntity, InvariantViolation
from ..models import (
    ZERO_ADDRESS,
    CreditLine,
    CreditLineState,
    CreditLineUpdated,
    LedgerEvent,
    Loan,
    LoanClosed,
    LoanCreated,
    LoanForgiven,
    LoanNFTTransferred,
    LoanRepaid,
    LoanState,
)

logger = logging.getLogger(__name__)

Position = tuple[int, int]
_END_OF_BLOCK = 2**256


@dataclass(frozen=True)
class ReconciledSnapshot:
    loans: tuple[Loan, ...]
    credit_lines: tuple[CreditLine, ...]
    block_number: int


class Reconciler:
    """Owns the canonical Loan / CreditLine maps for one account session.

    Every entity carries a high-water mark ``(block_number, log_index)``;
    events at or below it are skipped, so overlapping fetch ranges can be
    folded again safely.
    """

    def __init__(self) -> None:
        self._loans: dict[int, Loan] = {}
        self._created: dict[int, LoanCreated] = {}
        self._lines: dict[tuple[str, str, str], CreditLine] = {}
        self._marks: dict[object, Position] = {}
        self._last_block = 0
        self.rejected: list[tuple[LedgerEvent, DuplicateEntity]] = []
        self.violations: list[InvariantViolation] = []
        self._over_limit: set[tuple[tuple[str, str, str], int, int]] = set()

    @property
    def last_block(self) -> int:
        return self._last_block

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def fold(self, events: Iterable[LedgerEvent]) -> int:
        """Sort by ledger position and apply each event; returns how many applied."""
        applied = 0
        for event in sorted(events, key=lambda e: e.position):
            try:
                if self.apply(event):
                    applied += 1
            except DuplicateEntity as e:
                logger.error("Rejected event %s: %s", event.dedup_key, e)
                self.rejected.append((event, e))
        self._check_utilisation()
        return applied

    def apply(self, event: LedgerEvent) -> bool:
        """Fold a single event. Returns False when it was skipped."""
        payload = event.payload
        key = _entity_key(event)
        mark = self._marks.get(key)
        if mark is not None and event.position <= mark:
            logger.debug("Skipping replayed event %s at %s", event.kind.value, event.position)
            return False

        if isinstance(payload, LoanCreated):
            applied = self._apply_created(event, payload)
        elif isinstance(payload, CreditLineUpdated):
            applied = self._apply_credit_line(event, payload)
        else:
            applied = self._apply_loan_event(event)

        if applied:
            self._marks[key] = event.position
            self._last_block = max(self._last_block, event.block_number)
        return applied

    def _apply_created(self, event: LedgerEvent, payload: LoanCreated) -> bool:
        existing = self._created.get(payload.loan_id)
        if existing is not None:
            if existing == payload:
                logger.debug("Loan %d already created, skipping", payload.loan_id)
                return False
            raise DuplicateEntity(
                f"Loan {payload.loan_id} created twice with different payloads"
            )

        self._created[payload.loan_id] = payload
        self._loans[payload.loan_id] = Loan(
            id=payload.loan_id,
            lender=payload.lender,
            borrower=payload.borrower,
            original_borrower=payload.borrower,
            token=payload.token,
            principal=payload.principal,
            interest_rate_bps=payload.apr_bps,
            created_at=event.timestamp,
            is_active=payload.principal > 0,
        )
        return True

    def _apply_loan_event(self, event: LedgerEvent) -> bool:
        payload = event.payload
        loan = self._loans.get(payload.loan_id)
        if loan is None:
            logger.debug(
                "%s for unknown loan %d, skipping", event.kind.value, payload.loan_id
            )
            return False
        if not loan.is_active:
            logger.debug("%s on closed loan %d ignored", event.kind.value, loan.id)
            return True

        if isinstance(payload, LoanRepaid):
            repaid = self._clamp_reduction(loan, payload.principal_paid, "repayment")
            loan = dataclasses.replace(
                loan,
                repaid_principal=loan.repaid_principal + repaid,
                accrued_interest_paid=loan.accrued_interest_paid + payload.interest_paid,
                last_payment_at=event.timestamp,
                payment_times=loan.payment_times + (event.timestamp,),
            )
        elif isinstance(payload, LoanForgiven):
            forgiven = self._clamp_reduction(
                loan, payload.principal_forgiven, "forgiveness"
            )
            loan = dataclasses.replace(
                loan, forgiven_principal=loan.forgiven_principal + forgiven
            )
        elif isinstance(payload, LoanClosed):
            loan = dataclasses.replace(loan, is_active=False)
        elif isinstance(payload, LoanNFTTransferred):
            if payload.to_address == ZERO_ADDRESS:
                logger.debug("Loan %d NFT burned, borrower unchanged", loan.id)
            else:
                loan = dataclasses.replace(loan, borrower=payload.to_address)

        if loan.outstanding_principal == 0:
            loan = dataclasses.replace(loan, is_active=False)
        self._loans[loan.id] = loan
        return True

    def _apply_credit_line(self, event: LedgerEvent, payload: CreditLineUpdated) -> bool:
        if payload.min_apr > payload.max_apr:
            self._violation(
                f"Credit line {payload.lender}/{payload.borrower} minAPR "
                f"{payload.min_apr} above maxAPR {payload.max_apr}"
            )
        key = (payload.lender, payload.borrower, payload.token)
        self._lines[key] = CreditLine(
            lender=payload.lender,
            borrower=payload.borrower,
            token=payload.token,
            credit_limit=payload.credit_limit,
            min_apr=payload.min_apr,
            max_apr=payload.max_apr,
            origination_fee_bps=payload.origination_fee_bps,
            updated_block=event.block_number,
        )
        return True

    def _clamp_reduction(self, loan: Loan, amount: int, what: str) -> int:
        remaining = loan.outstanding_principal
        if amount > remaining:
            self._violation(
                f"Loan {loan.id} {what} of {amount} exceeds outstanding {remaining}"
            )
            return remaining
        return amount

    def _violation(self, message: str) -> None:
        violation = InvariantViolation(message)
        self.violations.append(violation)
        logger.warning("Invariant violation, value clamped: %s", violation)

    # ------------------------------------------------------------------
    # State snapshots
    # ------------------------------------------------------------------

    def apply_loan_state(self, state: LoanState) -> bool:
        """Merge a ``loanById``/``getOutstandingBalance`` read into a known loan."""
        loan = self._loans.get(state.loan_id)
        if loan is None:
            logger.debug("State for unknown loan %d ignored", state.loan_id)
            return False

        loan = dataclasses.replace(loan, accrued_interest=state.accrued_interest)
        key = ("loan", loan.id)
        mark = self._marks.get(key, (0, 0))
        if state.block_number >= mark[0]:
            drift = (
                loan.repaid_principal != state.repaid_principal
                or loan.forgiven_principal != state.forgiven_principal
                or loan.is_active == state.closed
            )
            if drift:
                logger.warning(
                    "Loan %d drift at block %d: events repaid=%d forgiven=%d, "
                    "chain repaid=%d forgiven=%d closed=%s",
                    loan.id, state.block_number, loan.repaid_principal,
                    loan.forgiven_principal, state.repaid_principal,
                    state.forgiven_principal, state.closed,
                )

            repaid = min(state.repaid_principal, loan.principal)
            forgiven = min(state.forgiven_principal, loan.principal - repaid)
            if (repaid, forgiven) != (state.repaid_principal, state.forgiven_principal):
                self._violation(
                    f"Loan {loan.id} state repaid+forgiven exceeds principal"
                )
            borrower = loan.borrower
            if state.borrower and state.borrower != ZERO_ADDRESS:
                borrower = state.borrower
            loan = dataclasses.replace(
                loan,
                repaid_principal=repaid,
                forgiven_principal=forgiven,
                borrower=borrower,
                is_active=not state.closed and loan.principal - repaid - forgiven > 0,
            )
            self._marks[key] = max(mark, (state.block_number, _END_OF_BLOCK))
            self._last_block = max(self._last_block, state.block_number)

        self._loans[loan.id] = loan
        self._check_utilisation()
        return True

    def apply_credit_line_state(self, state: CreditLineState) -> bool:
        """Merge a ``creditLines`` read taken at or after the line's last event."""
        key = (state.lender, state.borrower, state.token)
        mark = self._marks.get(("line", key), (0, 0))
        if state.block_number < mark[0]:
            return False

        current = self._lines.get(key)
        self._lines[key] = CreditLine(
            lender=state.lender,
            borrower=state.borrower,
            token=state.token,
            credit_limit=state.credit_limit,
            min_apr=state.min_apr,
            max_apr=state.max_apr,
            origination_fee_bps=state.origination_fee_bps,
            updated_block=current.updated_block if current else state.block_number,
        )
        self._marks[("line", key)] = max(mark, (state.block_number, _END_OF_BLOCK))
        self._check_utilisation()
        return True

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def loans(self) -> list[Loan]:
        return [self._loans[i] for i in sorted(self._loans)]

    def loan(self, loan_id: int) -> Loan | None:
        return self._loans.get(loan_id)

    def credit_line_keys(self) -> list[tuple[str, str, str]]:
        return sorted(self._lines)

    def _utilisation(self) -> dict[tuple[str, str, str], int]:
        utilised: dict[tuple[str, str, str], int] = defaultdict(int)
        for loan in self._loans.values():
            if loan.is_active:
                utilised[loan.credit_key] += loan.outstanding_principal
        return utilised

    def _check_utilisation(self) -> None:
        """Record an over-limit line once per (line, limit, utilisation) state."""
        utilised = self._utilisation()
        for key, line in self._lines.items():
            used = utilised.get(key, 0)
            if not line.is_active or used <= line.credit_limit:
                continue
            state = (key, line.credit_limit, used)
            if state not in self._over_limit:
                self._over_limit.add(state)
                self._violation(
                    f"Credit line {key} utilised {used} above limit {line.credit_limit}"
                )

    def credit_lines(self) -> list[CreditLine]:
        """Credit lines with ``utilised_credit`` derived from outstanding loans."""
        utilised = self._utilisation()
        return [
            dataclasses.replace(
                self._lines[key],
                utilised_credit=min(utilised.get(key, 0), self._lines[key].credit_limit),
            )
            for key in sorted(self._lines)
        ]

    def snapshot(self) -> ReconciledSnapshot:
        return ReconciledSnapshot(
            loans=tuple(self.loans()),
            credit_lines=tuple(self.credit_lines()),
            block_number=self._last_block,
        )


def _entity_key(event: LedgerEvent) -> object:
    payload = event.payload
    if isinstance(payload, CreditLineUpdated):
        return ("line", (payload.lender, payload.borrower, payload.token))
    return ("loan", payload.loan_id)
