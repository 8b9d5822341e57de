"""
Ledger Store Module

Typed repository over a StorageInterface for loans, members, operators and
the append-only fine transaction ledger. ``atomic_save`` is the only write
path for versioned aggregates: it checks each record's version against the
stored copy, writes everything in one storage transaction and bumps the
versions, so a concurrent update to the same loan or member is detected
instead of lost.
"""

from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any

from .currency import Money
from .errors import PersistenceConflict
from .logging_config import get_logger
from .models import (
    Loan, Member, Operator, FineTransaction,
    FineStatus, PaymentMethod, TransactionStatus
)
from .storage import StorageInterface


RECEIPT_PREFIX = "FINE"


def format_receipt_number(day: date, sequence: int) -> str:
    """FINE-YYYYMMDD-NNNNNN"""
    return f"{RECEIPT_PREFIX}-{day.strftime('%Y%m%d')}-{sequence:06d}"


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class LedgerStore:
    """Repository for the fine subsystem's records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.members_table = "members"
        self.operators_table = "operators"
        self.transactions_table = "fine_transactions"
        self.sequences_table = "receipt_sequences"
        self.logger = get_logger("library_fines.ledger_store")

    # Lookups

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def find_member(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.members_table, member_id)
        return self._member_from_dict(data) if data else None

    def find_operator(self, operator_id: str) -> Optional[Operator]:
        data = self.storage.load(self.operators_table, operator_id)
        return self._operator_from_dict(data) if data else None

    def find_transaction(self, transaction_id: str) -> Optional[FineTransaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        return self._transaction_from_dict(data) if data else None

    # Loan queries

    def find_overdue_loans(self, as_of: date) -> List[Loan]:
        """Unreturned loans whose due date is before ``as_of``"""
        records = self.storage.find(
            self.loans_table,
            {'returned': False},
            [('due_date', '<', as_of.isoformat())]
        )
        return [self._loan_from_dict(data) for data in records]

    def find_loans_by_member(self, member_id: str) -> List[Loan]:
        records = self.storage.find(self.loans_table, {'member_id': member_id})
        return [self._loan_from_dict(data) for data in records]

    def find_active_loans_by_member(self, member_id: str) -> List[Loan]:
        records = self.storage.find(self.loans_table, {'member_id': member_id, 'returned': False})
        return [self._loan_from_dict(data) for data in records]

    def find_pending_fines_by_member(self, member_id: str) -> List[Loan]:
        records = self.storage.find(self.loans_table, {
            'member_id': member_id,
            'fine_status': FineStatus.PENDING.value
        })
        return [self._loan_from_dict(data) for data in records]

    def find_all_pending_fines(self) -> List[Loan]:
        records = self.storage.find(self.loans_table, {'fine_status': FineStatus.PENDING.value})
        return [self._loan_from_dict(data) for data in records]

    # Member queries

    def find_banned_members(self) -> List[Member]:
        records = self.storage.find(self.members_table, {'is_banned': True})
        return [self._member_from_dict(data) for data in records]

    def find_all_members(self) -> List[Member]:
        return [self._member_from_dict(data) for data in self.storage.load_all(self.members_table)]

    # Transaction queries

    def find_transactions_by_member(self, member_id: str) -> List[FineTransaction]:
        """Member's ledger entries, newest first"""
        records = self.storage.find(self.transactions_table, {'member_id': member_id})
        transactions = [self._transaction_from_dict(data) for data in records]
        transactions.sort(key=lambda t: t.transaction_date, reverse=True)
        return transactions

    def find_transactions_by_date_range(self, start: datetime, end: datetime) -> List[FineTransaction]:
        """Ledger entries with ``start <= transaction_date <= end``, oldest first"""
        records = self.storage.find(
            self.transactions_table,
            {},
            [
                ('transaction_date', '>=', start.astimezone(timezone.utc).isoformat()),
                ('transaction_date', '<=', end.astimezone(timezone.utc).isoformat()),
            ]
        )
        transactions = [self._transaction_from_dict(data) for data in records]
        transactions.sort(key=lambda t: t.transaction_date)
        return transactions

    def find_transaction_by_receipt(self, receipt_number: str) -> Optional[FineTransaction]:
        records = self.storage.find(self.transactions_table, {'receipt_number': receipt_number})
        return self._transaction_from_dict(records[0]) if records else None

    def find_refund_for(self, receipt_number: str) -> Optional[FineTransaction]:
        """The compensating entry for ``receipt_number``, if one exists"""
        records = self.storage.find(self.transactions_table, {'refunds_receipt': receipt_number})
        return self._transaction_from_dict(records[0]) if records else None

    def total_collected_fines(self) -> Money:
        """Completed payments net of refunds"""
        total = Money.zero()
        for data in self.storage.find(self.transactions_table, {}):
            transaction = self._transaction_from_dict(data)
            if transaction.payment_method == PaymentMethod.WAIVED:
                continue
            if transaction.status == TransactionStatus.COMPLETED:
                total = total + transaction.amount
            elif transaction.status == TransactionStatus.REFUNDED:
                total = total - transaction.amount
        return total

    def total_waived_fines(self) -> Money:
        records = self.storage.find(self.transactions_table, {
            'payment_method': PaymentMethod.WAIVED.value,
            'status': TransactionStatus.COMPLETED.value
        })
        return sum((Money.of(data['amount']) for data in records), Money.zero())

    def total_outstanding_fines(self) -> Money:
        return sum((member.current_fines_due for member in self.find_all_members()), Money.zero())

    # Writes

    def save_operator(self, operator: Operator) -> Operator:
        operator.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.operators_table, operator.id, self._operator_to_dict(operator))
        return operator

    def save_loan(self, loan: Loan) -> Loan:
        self.atomic_save(loan=loan)
        return loan

    def save_member(self, member: Member) -> Member:
        self.atomic_save(member=member)
        return member

    def next_receipt_number(self, day: date) -> str:
        """
        Allocate the next receipt number for ``day``. Called inside the unit
        that records the transaction, so the sequence and the receipt commit
        or roll back together.
        """
        key = day.strftime('%Y%m%d')
        with self.storage.atomic():
            row = self.storage.load(self.sequences_table, key) or {'id': key, 'last_sequence': 0}
            row['last_sequence'] += 1
            self.storage.save(self.sequences_table, key, row)
        return format_receipt_number(day, row['last_sequence'])

    def atomic_save(
        self,
        loan: Optional[Loan] = None,
        member: Optional[Member] = None,
        transaction: Optional[FineTransaction] = None
    ) -> None:
        """
        Persist any combination of a loan, a member and a new ledger entry
        as one unit.

        Raises:
            PersistenceConflict: a loan or member was changed since it was
                read, or the transaction was already recorded
        """
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            if loan is not None:
                self._check_version(self.loans_table, 'Loan', loan.id, loan.version)
            if member is not None:
                self._check_version(self.members_table, 'Member', member.id, member.version)

            if transaction is not None:
                if self.storage.exists(self.transactions_table, transaction.id):
                    raise PersistenceConflict(f"Transaction {transaction.id} already recorded")
                if transaction.receipt_number is None:
                    transaction.receipt_number = self.next_receipt_number(
                        transaction.transaction_date.date()
                    )
                elif self.find_transaction_by_receipt(transaction.receipt_number):
                    raise PersistenceConflict(
                        f"Receipt {transaction.receipt_number} already issued"
                    )
                self.storage.save(
                    self.transactions_table, transaction.id,
                    self._transaction_to_dict(transaction)
                )

            if loan is not None:
                data = self._loan_to_dict(loan)
                data['version'] = loan.version + 1
                data['updated_at'] = now.isoformat()
                self.storage.save(self.loans_table, loan.id, data)
            if member is not None:
                data = self._member_to_dict(member)
                data['version'] = member.version + 1
                data['updated_at'] = now.isoformat()
                self.storage.save(self.members_table, member.id, data)

        # Reflect the committed state back onto the callers' objects
        if loan is not None:
            loan.version += 1
            loan.updated_at = now
        if member is not None:
            member.version += 1
            member.updated_at = now

    def _check_version(self, table: str, kind: str, record_id: str, expected: int) -> None:
        stored = self.storage.load(table, record_id)
        stored_version = stored['version'] if stored else 0
        if stored is None and expected != 0:
            raise PersistenceConflict(f"{kind} {record_id} no longer exists")
        if stored_version != expected:
            self.logger.debug(
                f"{kind} {record_id} version conflict: expected {expected}, found {stored_version}"
            )
            raise PersistenceConflict(
                f"{kind} {record_id} was modified concurrently "
                f"(expected version {expected}, found {stored_version})"
            )

    # Serialization

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'book_id': loan.book_id,
            'book_title': loan.book_title,
            'member_id': loan.member_id,
            'borrow_date': loan.borrow_date.isoformat(),
            'due_date': loan.due_date.isoformat(),
            'return_date': _iso_or_none(loan.return_date),
            'returned': loan.returned,
            'fine_per_day': str(loan.fine_per_day.amount),
            'days_overdue': loan.days_overdue,
            'fine_amount': str(loan.fine_amount.amount),
            'fine_status': loan.fine_status.value,
            'fine_exempt': loan.fine_exempt,
            'fine_exempt_reason': loan.fine_exempt_reason,
            'fine_updated_date': _iso_or_none(loan.fine_updated_date),
            'last_fine_calculation_date': _iso_or_none(loan.last_fine_calculation_date),
            'overdue_counted': loan.overdue_counted,
            'version': loan.version,
        }

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            book_id=data['book_id'],
            book_title=data.get('book_title'),
            member_id=data['member_id'],
            borrow_date=date.fromisoformat(data['borrow_date']),
            due_date=date.fromisoformat(data['due_date']),
            return_date=_date_or_none(data.get('return_date')),
            returned=bool(data['returned']),
            fine_per_day=Money(Decimal(data['fine_per_day'])),
            days_overdue=data['days_overdue'],
            fine_amount=Money(Decimal(data['fine_amount'])),
            fine_status=FineStatus(data['fine_status']),
            fine_exempt=bool(data['fine_exempt']),
            fine_exempt_reason=data.get('fine_exempt_reason'),
            fine_updated_date=_date_or_none(data.get('fine_updated_date')),
            last_fine_calculation_date=_date_or_none(data.get('last_fine_calculation_date')),
            overdue_counted=bool(data.get('overdue_counted', False)),
            version=data.get('version', 0),
        )

    def _member_to_dict(self, member: Member) -> Dict[str, Any]:
        return {
            'id': member.id,
            'created_at': member.created_at.isoformat(),
            'updated_at': member.updated_at.isoformat(),
            'full_name': member.full_name,
            'email': member.email,
            'phone': member.phone,
            'current_fines_due': str(member.current_fines_due.amount),
            'total_fines_paid': str(member.total_fines_paid.amount),
            'overdue_books_count': member.overdue_books_count,
            'is_banned': member.is_banned,
            'ban_reason': member.ban_reason,
            'ban_start_date': _iso_or_none(member.ban_start_date),
            'ban_end_date': _iso_or_none(member.ban_end_date),
            'total_ban_count': member.total_ban_count,
            'credit_limit': str(member.credit_limit.amount) if member.credit_limit is not None else None,
            'max_allowed_overdue_days': member.max_allowed_overdue_days,
            'version': member.version,
        }

    def _member_from_dict(self, data: Dict[str, Any]) -> Member:
        credit_limit = data.get('credit_limit')
        return Member(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            email=data.get('email'),
            phone=data.get('phone'),
            current_fines_due=Money(Decimal(data['current_fines_due'])),
            total_fines_paid=Money(Decimal(data['total_fines_paid'])),
            overdue_books_count=data['overdue_books_count'],
            is_banned=bool(data['is_banned']),
            ban_reason=data.get('ban_reason'),
            ban_start_date=_date_or_none(data.get('ban_start_date')),
            ban_end_date=_date_or_none(data.get('ban_end_date')),
            total_ban_count=data.get('total_ban_count', 0),
            credit_limit=Money(Decimal(credit_limit)) if credit_limit is not None else None,
            max_allowed_overdue_days=data.get('max_allowed_overdue_days'),
            version=data.get('version', 0),
        )

    def _operator_to_dict(self, operator: Operator) -> Dict[str, Any]:
        return operator.to_dict()

    def _operator_from_dict(self, data: Dict[str, Any]) -> Operator:
        return Operator(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            username=data['username'],
            full_name=data['full_name'],
            role=data.get('role', 'LIBRARIAN'),
            is_active=bool(data.get('is_active', True)),
        )

    def _transaction_to_dict(self, transaction: FineTransaction) -> Dict[str, Any]:
        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'member_id': transaction.member_id,
            'loan_id': transaction.loan_id,
            'amount': str(transaction.amount.amount),
            'payment_method': transaction.payment_method.value,
            'transaction_date': transaction.transaction_date.astimezone(timezone.utc).isoformat(),
            'processed_by': transaction.processed_by,
            'status': transaction.status.value,
            'payment_reference': transaction.payment_reference,
            'notes': transaction.notes,
            'receipt_number': transaction.receipt_number,
            'refunds_receipt': transaction.refunds_receipt,
        }

    def _transaction_from_dict(self, data: Dict[str, Any]) -> FineTransaction:
        return FineTransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            loan_id=data.get('loan_id'),
            amount=Money(Decimal(data['amount'])),
            payment_method=PaymentMethod(data['payment_method']),
            transaction_date=datetime.fromisoformat(data['transaction_date']),
            processed_by=data['processed_by'],
            status=TransactionStatus(data['status']),
            payment_reference=data.get('payment_reference'),
            notes=data.get('notes'),
            receipt_number=data.get('receipt_number'),
            refunds_receipt=data.get('refunds_receipt'),
        )
