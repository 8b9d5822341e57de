"""
Fine Ledger Models

Plain records for the two mutable aggregates (Loan, Member), the operators who
act on them, and the append-only FineTransaction ledger entry.
"""

from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Optional
from enum import Enum

from .currency import Money
from .storage import StorageRecord


class FineStatus(Enum):
    """Fine lifecycle on a loan: NONE -> PENDING -> {PAID, WAIVED, CANCELLED}"""
    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    WAIVED = "WAIVED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (FineStatus.PAID, FineStatus.WAIVED, FineStatus.CANCELLED)

    @property
    def is_settled(self) -> bool:
        return self in (FineStatus.PAID, FineStatus.WAIVED)


class PaymentMethod(Enum):
    """How a fine was settled"""
    CASH = "CASH"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    ONLINE = "ONLINE"
    WAIVED = "WAIVED"
    OTHER = "OTHER"


class TransactionStatus(Enum):
    """Status of a ledger entry"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class MemberState(Enum):
    """Borrowing privileges as seen by the ban state machine"""
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"


@dataclass
class Loan(StorageRecord):
    """A borrow record: one copy of a book lent to one member"""
    book_id: str
    member_id: str
    borrow_date: date
    due_date: date
    fine_per_day: Money
    book_title: Optional[str] = None
    return_date: Optional[date] = None
    returned: bool = False

    # Cached fine state, recomputed by the accrual job
    days_overdue: int = 0
    fine_amount: Money = field(default_factory=Money.zero)
    fine_status: FineStatus = FineStatus.NONE
    fine_exempt: bool = False
    fine_exempt_reason: Optional[str] = None
    fine_updated_date: Optional[date] = None
    last_fine_calculation_date: Optional[date] = None

    # True while this loan contributes to the member's overdue_books_count
    overdue_counted: bool = False

    version: int = 0

    @property
    def display_title(self) -> str:
        return self.book_title or f"book {self.book_id}"


@dataclass
class Member(StorageRecord):
    """A library member with incrementally maintained fine and ban state"""
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    current_fines_due: Money = field(default_factory=Money.zero)
    total_fines_paid: Money = field(default_factory=Money.zero)
    overdue_books_count: int = 0

    is_banned: bool = False
    ban_reason: Optional[str] = None
    ban_start_date: Optional[date] = None
    ban_end_date: Optional[date] = None
    total_ban_count: int = 0

    # Per-member overrides; None means "use the system setting"
    credit_limit: Optional[Money] = None
    max_allowed_overdue_days: Optional[int] = None

    version: int = 0

    @property
    def state(self) -> MemberState:
        return MemberState.BANNED if self.is_banned else MemberState.ACTIVE

    @property
    def is_permanently_banned(self) -> bool:
        return self.is_banned and self.ban_end_date is None

    def is_ban_expired(self, today: date) -> bool:
        return self.is_banned and self.ban_end_date is not None and today > self.ban_end_date


@dataclass
class Operator(StorageRecord):
    """Staff user allowed to settle fines"""
    username: str
    full_name: str
    role: str = "LIBRARIAN"
    is_active: bool = True


@dataclass
class FineTransaction(StorageRecord):
    """
    Immutable ledger entry for a payment, waiver or refund.
    Never updated or deleted once stored.
    """
    member_id: str
    loan_id: Optional[str]
    amount: Money
    payment_method: PaymentMethod
    transaction_date: datetime
    processed_by: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    receipt_number: Optional[str] = None
    # Receipt of the transaction this one compensates (refunds only)
    refunds_receipt: Optional[str] = None
