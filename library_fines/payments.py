"""
Payment Processing Module

Settles fines by payment or waiver. Each settlement appends exactly one
COMPLETED ledger entry with a fresh receipt number and updates the loan and
its member in the same atomic unit. Refunds never touch history: they append
a compensating REFUNDED entry that points at the original receipt.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, max_money
from .errors import NotFound, AlreadySettled, InsufficientAmount, InvalidInput, InvalidTransition
from .fines import transition_fine_status
from .ledger_store import LedgerStore
from .logging_config import get_logger, log_action
from .models import (
    Loan, Member, Operator, FineTransaction,
    FineStatus, PaymentMethod, TransactionStatus
)
from .notifications import Notifier, notify_safely
from .retry import run_with_retry
from .settings import Clock


AmountLike = Union[Money, Decimal, str, int]


class PaymentProcessor:
    """Operator-initiated fine payments, waivers and refunds"""

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock,
        notifier: Notifier,
        audit: Optional[AuditTrail] = None,
        max_retries: int = 3
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.audit = audit or AuditTrail(store.storage)
        self.max_retries = max_retries
        self.logger = get_logger("library_fines.payments")

    def pay(
        self,
        loan_id: str,
        amount: AmountLike,
        method: Union[PaymentMethod, str],
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        *,
        operator_id: str
    ) -> FineTransaction:
        """
        Settle a loan's pending fine in full.

        Args:
            loan_id: Loan whose fine is being paid
            amount: Amount tendered; must cover the whole fine
            method: Payment method (any except WAIVED)
            reference: External payment reference; generated when omitted
            notes: Free-text notes stored on the transaction
            operator_id: Operator recording the payment

        Returns:
            The COMPLETED FineTransaction

        Raises:
            NotFound: loan, member or operator does not exist
            AlreadySettled: the fine is already PAID or WAIVED
            InsufficientAmount: amount is below the fine
            InvalidInput: bad amount or method, or no fine to pay
            PersistenceConflict: concurrent updates exhausted the retries
        """
        money = self._parse_amount(amount)
        method = self._parse_method(method)
        if method == PaymentMethod.WAIVED:
            raise InvalidInput("Use waive() to forgive a fine")
        self._require_operator(operator_id)

        def attempt() -> Tuple[FineTransaction, Member]:
            loan, member = self._load_for_settlement(loan_id)
            if money < loan.fine_amount:
                raise InsufficientAmount(loan.id, money, loan.fine_amount)

            now = self.clock.now()
            settled = loan.fine_amount
            transaction = self._new_transaction(
                loan, operator_id, money, method, now,
                reference=reference or f"MANUAL-{int(now.timestamp() * 1000)}",
                notes=notes
            )

            transition_fine_status(loan, FineStatus.PAID)
            loan.fine_amount = Money.zero()
            loan.fine_updated_date = now.date()

            member.current_fines_due = max_money(Money.zero(), member.current_fines_due - settled)
            member.total_fines_paid = member.total_fines_paid + money
            if loan.overdue_counted:
                member.overdue_books_count = max(0, member.overdue_books_count - 1)
                loan.overdue_counted = False

            with self.store.storage.atomic():
                self.store.atomic_save(loan=loan, member=member, transaction=transaction)
                self.audit.log_event(
                    event_type=AuditEventType.FINE_PAID,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        'member_id': member.id,
                        'amount': money,
                        'fine_amount': settled,
                        'payment_method': method,
                        'receipt_number': transaction.receipt_number
                    },
                    user_id=operator_id
                )
            return transaction, member

        transaction, member = run_with_retry(attempt, self.max_retries, self.logger, f"payment on loan {loan_id}")

        log_action(
            self.logger, "info",
            f"Fine paid on loan {loan_id}: {money} by {method.value}, receipt {transaction.receipt_number}",
            user_id=operator_id,
            action="pay_fine",
            resource=f"loan:{loan_id}",
            extra={'receipt_number': transaction.receipt_number, 'amount': str(money)}
        )
        notify_safely(self.logger, self.notifier.receipt, member, transaction)
        return transaction

    def waive(self, loan_id: str, reason: str, operator_id: str) -> FineTransaction:
        """
        Forgive a loan's pending fine. Records the forgiven amount in a
        WAIVED ledger entry. The member's overdue count is not changed.
        """
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required to waive a fine")
        self._require_operator(operator_id)

        def attempt() -> FineTransaction:
            loan, member = self._load_for_settlement(loan_id)

            now = self.clock.now()
            waived = loan.fine_amount
            transaction = self._new_transaction(
                loan, operator_id, waived, PaymentMethod.WAIVED, now,
                notes=f"Fine waived: {reason.strip()}"
            )

            transition_fine_status(loan, FineStatus.WAIVED)
            loan.fine_amount = Money.zero()
            loan.fine_updated_date = now.date()
            member.current_fines_due = member.current_fines_due - waived

            with self.store.storage.atomic():
                self.store.atomic_save(loan=loan, member=member, transaction=transaction)
                self.audit.log_event(
                    event_type=AuditEventType.FINE_WAIVED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        'member_id': member.id,
                        'amount': waived,
                        'reason': reason.strip(),
                        'receipt_number': transaction.receipt_number
                    },
                    user_id=operator_id
                )
            return transaction

        transaction = run_with_retry(attempt, self.max_retries, self.logger, f"waiver on loan {loan_id}")

        log_action(
            self.logger, "info",
            f"Fine waived on loan {loan_id}: {transaction.amount}",
            user_id=operator_id,
            action="waive_fine",
            resource=f"loan:{loan_id}",
            extra={'receipt_number': transaction.receipt_number, 'reason': reason.strip()}
        )
        return transaction

    def refund(self, receipt_number: str, reason: str, operator_id: str) -> FineTransaction:
        """
        Record a refund of a completed payment as a new REFUNDED entry.
        The original entry, the loan and the member are left as they are.
        """
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required to refund a payment")
        self._require_operator(operator_id)

        with self.store.storage.atomic():
            original = self.store.find_transaction_by_receipt(receipt_number)
            if original is None:
                raise NotFound("transaction", receipt_number)
            if original.payment_method == PaymentMethod.WAIVED:
                raise InvalidInput(f"Receipt {receipt_number} is a waiver and cannot be refunded")
            if original.status != TransactionStatus.COMPLETED or original.refunds_receipt:
                raise InvalidInput(f"Receipt {receipt_number} is not a completed payment")
            existing = self.store.find_refund_for(receipt_number)
            if existing is not None:
                raise InvalidTransition(
                    f"Receipt {receipt_number} was already refunded by {existing.receipt_number}"
                )

            now = self.clock.now()
            refund = FineTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_id=original.member_id,
                loan_id=original.loan_id,
                amount=original.amount,
                payment_method=original.payment_method,
                transaction_date=now,
                processed_by=operator_id,
                status=TransactionStatus.REFUNDED,
                payment_reference=original.payment_reference,
                notes=f"Refund of {receipt_number}: {reason.strip()}",
                refunds_receipt=receipt_number
            )
            self.store.atomic_save(transaction=refund)
            self.audit.log_event(
                event_type=AuditEventType.FINE_REFUNDED,
                entity_type="transaction",
                entity_id=original.id,
                metadata={
                    'receipt_number': receipt_number,
                    'refund_receipt_number': refund.receipt_number,
                    'amount': refund.amount,
                    'reason': reason.strip()
                },
                user_id=operator_id
            )

        log_action(
            self.logger, "info",
            f"Payment {receipt_number} refunded as {refund.receipt_number}",
            user_id=operator_id,
            action="refund_fine",
            resource=f"transaction:{original.id}",
            extra={'amount': str(refund.amount)}
        )
        return refund

    def _load_for_settlement(self, loan_id: str) -> Tuple[Loan, Member]:
        loan = self.store.find_loan(loan_id)
        if loan is None:
            raise NotFound("loan", loan_id)
        if loan.fine_status.is_settled:
            raise AlreadySettled(loan.id, loan.fine_status.value)
        if loan.fine_status == FineStatus.CANCELLED:
            raise InvalidInput(f"Fine for loan {loan.id} was cancelled")
        if loan.fine_status == FineStatus.NONE:
            raise InvalidInput(f"Loan {loan.id} has no outstanding fine")

        member = self.store.find_member(loan.member_id)
        if member is None:
            raise NotFound("member", loan.member_id)
        return loan, member

    def _require_operator(self, operator_id: str) -> Operator:
        if not operator_id:
            raise InvalidInput("An operator id is required")
        operator = self.store.find_operator(operator_id)
        if operator is None or not operator.is_active:
            raise NotFound("operator", operator_id)
        return operator

    def _new_transaction(self, loan: Loan, operator_id: str, amount: Money,
                         method: PaymentMethod, now: datetime,
                         reference: Optional[str] = None,
                         notes: Optional[str] = None) -> FineTransaction:
        return FineTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=loan.member_id,
            loan_id=loan.id,
            amount=amount,
            payment_method=method,
            transaction_date=now,
            processed_by=operator_id,
            status=TransactionStatus.COMPLETED,
            payment_reference=reference,
            notes=notes
        )

    @staticmethod
    def _parse_amount(amount: AmountLike) -> Money:
        try:
            money = Money.of(amount)
        except (TypeError, ValueError, ArithmeticError) as e:
            raise InvalidInput(f"Invalid amount: {amount!r}") from e
        if not money.is_positive():
            raise InvalidInput("Payment amount must be positive")
        return money

    @staticmethod
    def _parse_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
        if isinstance(method, PaymentMethod):
            return method
        try:
            return PaymentMethod(str(method).upper())
        except ValueError as e:
            raise InvalidInput(f"Unknown payment method: {method}") from e
