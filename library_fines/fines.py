"""
Fine Calculator Module

Pure functions deriving days overdue and fine amounts for a loan, plus the
fine-status state machine and invariant checks shared by the accrual job and
the payment processor. Nothing here touches storage or the clock.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Set

from .currency import Money
from .errors import InvalidTransition
from .models import Loan, Member, FineStatus


# Allowed fine status moves; terminal states have no outgoing edges
FINE_TRANSITIONS: Dict[FineStatus, Set[FineStatus]] = {
    FineStatus.NONE: {FineStatus.PENDING},
    FineStatus.PENDING: {FineStatus.PAID, FineStatus.WAIVED, FineStatus.CANCELLED},
    FineStatus.PAID: set(),
    FineStatus.WAIVED: set(),
    FineStatus.CANCELLED: set(),
}


def days_overdue(loan: Loan, today: date) -> int:
    """
    Whole days the loan is past due as of ``today``.

    Returned and fine-exempt loans are never overdue, and neither is a loan
    whose due date has not passed.
    """
    if loan.returned or loan.fine_exempt or today < loan.due_date:
        return 0
    return max(0, (today - loan.due_date).days)


def fine_amount(loan: Loan, today: date) -> Money:
    """
    Fine owed on the loan as of ``today``: days overdue times the loan's
    daily rate, rounded half-up to cents. Zero for exempt, returned and
    terminal-status loans.
    """
    if loan.fine_status.is_terminal:
        return Money.zero()
    overdue = days_overdue(loan, today)
    if overdue == 0:
        return Money.zero()
    return loan.fine_per_day * Decimal(overdue)


def can_transition(current: FineStatus, target: FineStatus) -> bool:
    return target in FINE_TRANSITIONS[current]


def transition_fine_status(loan: Loan, target: FineStatus) -> None:
    """Move the loan to ``target``; a no-op when it is already there"""
    if loan.fine_status == target:
        return
    if not can_transition(loan.fine_status, target):
        raise InvalidTransition(
            f"Loan {loan.id}: fine status cannot move from "
            f"{loan.fine_status.value} to {target.value}"
        )
    loan.fine_status = target


def check_loan_invariants(loan: Loan) -> List[str]:
    """Return a list of violated loan invariants (empty when consistent)"""
    problems = []
    if loan.fine_amount.is_negative():
        problems.append("fine_amount is negative")
    if (loan.fine_status in (FineStatus.NONE, FineStatus.PAID, FineStatus.WAIVED, FineStatus.CANCELLED)
            or loan.fine_exempt) and not loan.fine_amount.is_zero():
        problems.append(f"fine_amount must be zero when status is {loan.fine_status.value}"
                        f"{' or loan is exempt' if loan.fine_exempt else ''}")
    if loan.returned and loan.days_overdue != 0:
        problems.append("days_overdue must be zero for a returned loan")
    if loan.days_overdue < 0:
        problems.append("days_overdue is negative")
    return problems


def check_member_invariants(member: Member, loans: Iterable[Loan]) -> List[str]:
    """
    Check a member against the full set of its loans. This is the expensive
    full-scan form used by tests and reconciliation, never by the hot path.
    """
    problems = []
    loans = list(loans)
    pending = sum(
        (loan.fine_amount for loan in loans if loan.fine_status == FineStatus.PENDING),
        Money.zero()
    )
    if member.current_fines_due != pending:
        problems.append(
            f"current_fines_due {member.current_fines_due} != pending total {pending}"
        )
    if member.current_fines_due.is_negative():
        problems.append("current_fines_due is negative")
    if member.overdue_books_count < 0:
        problems.append("overdue_books_count is negative")
    if member.is_banned:
        if member.ban_start_date is None:
            problems.append("banned member has no ban_start_date")
        elif member.ban_end_date is not None and member.ban_end_date < member.ban_start_date:
            problems.append("ban_end_date precedes ban_start_date")
    return problems
