"""
Fine Reporting Module

Read-only views over the ledger: a member's fine summary and the library's
collected, waived and outstanding totals.
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .currency import Money
from .errors import NotFound
from .ledger_store import LedgerStore
from .models import Loan, FineTransaction


@dataclass
class FineSummary:
    """Fine position of one member"""
    member_id: str
    member_name: str
    current_fines_due: Money
    total_fines_paid: Money
    overdue_books_count: int
    is_banned: bool
    ban_end_date: Optional[date]
    pending_loans: List[Loan] = field(default_factory=list)
    total_pending_fines: Money = field(default_factory=Money.zero)
    recent_transactions: List[FineTransaction] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        """Cached dues agree with the pending loans"""
        return self.current_fines_due == self.total_pending_fines


@dataclass
class FineTotals:
    collected: Money
    waived: Money
    outstanding: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collected': str(self.collected),
            'waived': str(self.waived),
            'outstanding': str(self.outstanding),
        }


class FineReporter:
    """Builds fine summaries and totals from the LedgerStore"""

    def __init__(self, store: LedgerStore, recent_transaction_limit: int = 10):
        self.store = store
        self.recent_transaction_limit = recent_transaction_limit

    def get_fine_summary(self, member_id: str) -> FineSummary:
        member = self.store.find_member(member_id)
        if member is None:
            raise NotFound("member", member_id)

        pending = self.store.find_pending_fines_by_member(member_id)
        pending.sort(key=lambda loan: loan.due_date)
        total_pending = sum((loan.fine_amount for loan in pending), Money.zero())
        transactions = self.store.find_transactions_by_member(member_id)

        return FineSummary(
            member_id=member.id,
            member_name=member.full_name,
            current_fines_due=member.current_fines_due,
            total_fines_paid=member.total_fines_paid,
            overdue_books_count=member.overdue_books_count,
            is_banned=member.is_banned,
            ban_end_date=member.ban_end_date,
            pending_loans=pending,
            total_pending_fines=total_pending,
            recent_transactions=transactions[:self.recent_transaction_limit]
        )

    def get_totals(self) -> FineTotals:
        return FineTotals(
            collected=self.store.total_collected_fines(),
            waived=self.store.total_waived_fines(),
            outstanding=self.store.total_outstanding_fines()
        )

    def get_transactions_between(self, start: datetime, end: datetime) -> List[FineTransaction]:
        """Ledger entries in a period, e.g. for a daily cash-up"""
        return self.store.find_transactions_by_date_range(start, end)
