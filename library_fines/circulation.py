"""
Circulation Module

The loan and member lifecycle events the fine subsystem reacts to: lending a
copy, returning it, and exempting a loan from fines. Returning a loan stops
accrual for good; a fine already pending stays owed.
"""

from datetime import date, timedelta
from typing import Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, max_money
from .errors import NotFound, InvalidInput
from .fines import transition_fine_status
from .ledger_store import LedgerStore
from .logging_config import get_logger, log_action
from .models import Loan, Member, Operator, FineStatus
from .retry import run_with_retry
from .settings import Clock, SettingsProvider


DEFAULT_LOAN_DAYS = 14


class CirculationService:
    """Creates members, operators and loans and records returns"""

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock,
        settings: SettingsProvider,
        audit: Optional[AuditTrail] = None,
        max_retries: int = 3
    ):
        self.store = store
        self.clock = clock
        self.settings = settings
        self.audit = audit or AuditTrail(store.storage)
        self.max_retries = max_retries
        self.logger = get_logger("library_fines.circulation")

    def register_member(
        self,
        full_name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        credit_limit: Optional[Money] = None,
        max_allowed_overdue_days: Optional[int] = None,
        member_id: Optional[str] = None
    ) -> Member:
        if not full_name or not full_name.strip():
            raise InvalidInput("Member name is required")

        now = self.clock.now()
        member = Member(
            id=member_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name.strip(),
            email=email,
            phone=phone,
            credit_limit=Money.of(credit_limit) if credit_limit is not None else None,
            max_allowed_overdue_days=max_allowed_overdue_days
        )

        with self.store.storage.atomic():
            self.store.save_member(member)
            self.audit.log_event(
                event_type=AuditEventType.MEMBER_REGISTERED,
                entity_type="member",
                entity_id=member.id,
                metadata={'full_name': member.full_name}
            )
        return member

    def register_operator(self, username: str, full_name: str, role: str = "LIBRARIAN",
                          operator_id: Optional[str] = None) -> Operator:
        now = self.clock.now()
        operator = Operator(
            id=operator_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            full_name=full_name,
            role=role
        )
        return self.store.save_operator(operator)

    def lend(
        self,
        member_id: str,
        book_id: str,
        book_title: Optional[str] = None,
        borrow_date: Optional[date] = None,
        due_date: Optional[date] = None,
        fine_per_day: Optional[Money] = None
    ) -> Loan:
        """
        Lend a copy to a member. The daily fine rate is fixed on the loan at
        creation from the current setting unless one is given.
        """
        member = self.store.find_member(member_id)
        if member is None:
            raise NotFound("member", member_id)
        if member.is_banned:
            raise InvalidInput(f"Member {member_id} is banned and cannot borrow")

        borrow_date = borrow_date or self.clock.today()
        due_date = due_date or borrow_date + timedelta(days=DEFAULT_LOAN_DAYS)
        if due_date < borrow_date:
            raise InvalidInput("Due date cannot precede the borrow date")

        rate = Money.of(fine_per_day) if fine_per_day is not None else self.settings.fine_per_day()
        if rate.is_negative():
            raise InvalidInput("Fine per day cannot be negative")

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            book_id=book_id,
            book_title=book_title,
            member_id=member_id,
            borrow_date=borrow_date,
            due_date=due_date,
            fine_per_day=rate
        )

        with self.store.storage.atomic():
            self.store.save_loan(loan)
            self.audit.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={'member_id': member_id, 'book_id': book_id, 'due_date': due_date}
            )

        self.logger.info(f"Loan {loan.id} created for member {member_id}, due {due_date.isoformat()}")
        return loan

    def return_loan(self, loan_id: str, return_date: Optional[date] = None) -> Loan:
        """
        Mark a loan returned. Accrual stops; ``days_overdue`` drops to zero
        and the loan no longer counts toward the member's overdue books.
        """
        def attempt() -> Loan:
            loan = self.store.find_loan(loan_id)
            if loan is None:
                raise NotFound("loan", loan_id)
            if loan.returned:
                raise InvalidInput(f"Loan {loan_id} was already returned")

            member = None
            if loan.overdue_counted:
                member = self.store.find_member(loan.member_id)
                if member is None:
                    raise NotFound("member", loan.member_id)
                member.overdue_books_count = max(0, member.overdue_books_count - 1)
                loan.overdue_counted = False

            loan.returned = True
            loan.return_date = return_date or self.clock.today()
            loan.days_overdue = 0

            with self.store.storage.atomic():
                self.audit.log_event(
                    event_type=AuditEventType.LOAN_RETURNED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        'return_date': loan.return_date,
                        'fine_status': loan.fine_status,
                        'fine_amount': loan.fine_amount
                    }
                )
                self.store.atomic_save(loan=loan, member=member)
            return loan

        return run_with_retry(attempt, self.max_retries, self.logger, f"return of loan {loan_id}")

    def set_fine_exempt(self, loan_id: str, reason: str, operator_id: Optional[str] = None) -> Loan:
        """
        Exempt a loan from fines. A pending fine is cancelled and removed from
        the member's dues in the same unit.
        """
        if not reason or not reason.strip():
            raise InvalidInput("An exemption reason is required")

        def attempt() -> Loan:
            loan = self.store.find_loan(loan_id)
            if loan is None:
                raise NotFound("loan", loan_id)
            if loan.fine_exempt:
                return loan
            member = self.store.find_member(loan.member_id)
            if member is None:
                raise NotFound("member", loan.member_id)

            cancelled = Money.zero()
            if loan.fine_status == FineStatus.PENDING:
                cancelled = loan.fine_amount
                transition_fine_status(loan, FineStatus.CANCELLED)
                member.current_fines_due = max_money(Money.zero(), member.current_fines_due - cancelled)
            loan.fine_exempt = True
            loan.fine_exempt_reason = reason.strip()
            loan.fine_amount = Money.zero()
            loan.days_overdue = 0
            loan.fine_updated_date = self.clock.today()
            if loan.overdue_counted:
                member.overdue_books_count = max(0, member.overdue_books_count - 1)
                loan.overdue_counted = False

            with self.store.storage.atomic():
                self.audit.log_event(
                    event_type=AuditEventType.LOAN_EXEMPTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={'reason': loan.fine_exempt_reason, 'cancelled_amount': cancelled},
                    user_id=operator_id
                )
                self.store.atomic_save(loan=loan, member=member)
            return loan

        loan = run_with_retry(attempt, self.max_retries, self.logger, f"exemption of loan {loan_id}")
        log_action(
            self.logger, "info",
            f"Loan {loan_id} exempted from fines",
            user_id=operator_id,
            action="exempt_loan",
            resource=f"loan:{loan_id}"
        )
        return loan
