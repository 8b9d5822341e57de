"""
Test suite for payment processing

Payments, waivers and refunds: ledger entries, receipt numbers, member
aggregates and the typed failures returned to operators.
"""

import threading
import pytest
from datetime import date, timedelta

from library_fines.audit import AuditEventType
from library_fines.config import LibraryFinesConfig
from library_fines.currency import Money
from library_fines.errors import (
    NotFound, AlreadySettled, InsufficientAmount, InvalidInput, InvalidTransition,
    PersistenceConflict
)
from library_fines.fines import check_member_invariants
from library_fines.models import FineStatus, PaymentMethod, TransactionStatus
from library_fines.notifications import Notifier
from library_fines.settings import FixedClock, StaticSettingsProvider
from library_fines.storage import InMemoryStorage
from library_fines.system import LibraryFineSystem


TODAY = date(2024, 3, 15)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.receipts = []

    def warn(self, member, loan):
        pass

    def banned(self, member, loan):
        pass

    def restored(self, member):
        pass

    def receipt(self, member, transaction):
        self.receipts.append((member.id, transaction.receipt_number))


@pytest.fixture
def clock():
    return FixedClock(TODAY)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def system(clock, notifier):
    config = LibraryFinesConfig(storage_backend="memory", scheduler_enabled=False)
    return LibraryFineSystem(
        config=config,
        storage=InMemoryStorage(),
        clock=clock,
        settings=StaticSettingsProvider(config=config),
        notifier=notifier
    )


@pytest.fixture
def operator(system):
    return system.circulation.register_operator("librarian", "Lee Brarian", operator_id="OP1")


@pytest.fixture
def member(system):
    return system.circulation.register_member("Ada Reader", email="ada@example.com")


def fined_loan(system, member, days_overdue=10, rate=None, title="Dune"):
    """Lend an overdue copy and accrue its fine"""
    due = TODAY - timedelta(days=days_overdue)
    loan = system.circulation.lend(
        member.id, f"BOOK-{title}", book_title=title,
        borrow_date=due - timedelta(days=14), due_date=due, fine_per_day=rate
    )
    system.accrual_engine.run()
    return system.store.find_loan(loan.id)


class TestPay:
    """Test settling a fine by payment"""

    def test_full_payment(self, system, member, operator):
        """A 20.00 fine paid in cash is settled and leaves the member's dues"""
        loan = fined_loan(system, member)
        before = system.store.find_member(member.id)

        transaction = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH,
                                                   operator_id=operator.id)

        loan = system.store.find_loan(loan.id)
        after = system.store.find_member(member.id)
        assert loan.fine_status == FineStatus.PAID
        assert loan.fine_amount.is_zero()
        assert after.current_fines_due == before.current_fines_due - Money.of("20.00")
        assert after.total_fines_paid == before.total_fines_paid + Money.of("20.00")
        assert after.overdue_books_count == 0

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.amount == Money.of("20.00")
        assert transaction.payment_method == PaymentMethod.CASH
        assert transaction.processed_by == operator.id
        assert transaction.member_id == member.id

    def test_receipt_number_format(self, system, member, operator):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(loan.id, "20.00", "cash", operator_id=operator.id)
        assert transaction.receipt_number == "FINE-20240315-000001"
        assert system.store.find_transaction_by_receipt(transaction.receipt_number).id == transaction.id

    def test_receipts_are_unique(self, system, member, operator):
        receipts = set()
        for title in ("Dune", "Emma", "Ulysses"):
            loan = fined_loan(system, member, days_overdue=3, title=title)
            receipts.add(system.payment_processor.pay(
                loan.id, loan.fine_amount, PaymentMethod.CARD, operator_id=operator.id
            ).receipt_number)
        assert len(receipts) == 3

    def test_generated_reference(self, system, member, operator):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH,
                                                   operator_id=operator.id)
        assert transaction.payment_reference.startswith("MANUAL-")

    def test_explicit_reference_and_notes(self, system, member, operator):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(
            loan.id, "20.00", PaymentMethod.ONLINE, reference="PAY-778", notes="web portal",
            operator_id=operator.id
        )
        assert transaction.payment_reference == "PAY-778"
        assert transaction.notes == "web portal"

    def test_overpayment_accepted_at_face_value(self, system, member, operator):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(loan.id, "25.00", PaymentMethod.CASH,
                                                   operator_id=operator.id)

        stored = system.store.find_member(member.id)
        assert transaction.amount == Money.of("25.00")
        assert stored.total_fines_paid == Money.of("25.00")
        assert stored.current_fines_due.is_zero()

    def test_dues_track_remaining_pending_fines(self, system, member, operator):
        first = fined_loan(system, member, days_overdue=10, title="Dune")
        second = fined_loan(system, member, days_overdue=4, title="Emma")

        system.payment_processor.pay(first.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)

        stored = system.store.find_member(member.id)
        assert stored.current_fines_due == Money.of("8.00")
        assert check_member_invariants(stored, system.store.find_loans_by_member(member.id)) == []
        assert system.store.find_loan(second.id).fine_status == FineStatus.PENDING

    def test_paid_loan_is_not_reaccrued(self, system, member, operator, clock):
        loan = fined_loan(system, member)
        system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        clock.advance(1)
        system.accrual_engine.run()
        assert system.store.find_loan(loan.id).fine_status == FineStatus.PAID

    def test_receipt_notification(self, system, member, operator, notifier):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH,
                                                   operator_id=operator.id)
        assert notifier.receipts == [(member.id, transaction.receipt_number)]

    def test_payment_is_audited(self, system, member, operator):
        loan = fined_loan(system, member)
        system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        paid = system.audit_trail.get_events_by_type(AuditEventType.FINE_PAID)
        assert len(paid) == 1
        assert paid[0].user_id == operator.id
        assert paid[0].metadata["amount"] == "20.00"


class TestPayErrors:
    """Test typed payment failures"""

    def test_unknown_loan(self, system, operator):
        with pytest.raises(NotFound):
            system.payment_processor.pay("ghost", "1.00", PaymentMethod.CASH, operator_id=operator.id)

    def test_unknown_operator(self, system, member):
        loan = fined_loan(system, member)
        with pytest.raises(NotFound):
            system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id="ghost")

    def test_second_payment_is_already_settled(self, system, member, operator):
        loan = fined_loan(system, member)
        system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        with pytest.raises(AlreadySettled):
            system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        assert len(system.store.find_transactions_by_member(member.id)) == 1

    def test_insufficient_amount(self, system, member, operator):
        loan = fined_loan(system, member)
        with pytest.raises(InsufficientAmount):
            system.payment_processor.pay(loan.id, "19.99", PaymentMethod.CASH, operator_id=operator.id)
        assert system.store.find_loan(loan.id).fine_status == FineStatus.PENDING
        assert system.store.find_transactions_by_member(member.id) == []

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc", "2O.00", "1x0", "NaN"])
    def test_invalid_amount(self, system, member, operator, amount):
        loan = fined_loan(system, member)
        with pytest.raises(InvalidInput):
            system.payment_processor.pay(loan.id, amount, PaymentMethod.CASH, operator_id=operator.id)
        assert system.store.find_transactions_by_member(member.id) == []

    def test_exponent_amount_is_taken_at_face_value(self, system, member, operator):
        loan = fined_loan(system, member)
        transaction = system.payment_processor.pay(loan.id, "2e1", PaymentMethod.CASH, operator_id=operator.id)
        assert transaction.amount == Money.of("20.00")
        assert system.store.find_member(member.id).total_fines_paid == Money.of("20.00")

    def test_waived_method_rejected(self, system, member, operator):
        loan = fined_loan(system, member)
        with pytest.raises(InvalidInput):
            system.payment_processor.pay(loan.id, "20.00", PaymentMethod.WAIVED, operator_id=operator.id)

    def test_unknown_method(self, system, member, operator):
        loan = fined_loan(system, member)
        with pytest.raises(InvalidInput):
            system.payment_processor.pay(loan.id, "20.00", "barter", operator_id=operator.id)

    def test_loan_without_fine(self, system, member, operator):
        loan = system.circulation.lend(member.id, "BOOK-1")
        with pytest.raises(InvalidInput):
            system.payment_processor.pay(loan.id, "1.00", PaymentMethod.CASH, operator_id=operator.id)

    def test_exhausted_conflicts_surface(self, system, member, operator, monkeypatch):
        loan = fined_loan(system, member)

        def always_conflict(loan=None, member=None, transaction=None):
            raise PersistenceConflict("simulated")

        monkeypatch.setattr(system.store, "atomic_save", always_conflict)
        with pytest.raises(PersistenceConflict):
            system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)


class TestConcurrentSettlement:
    """Two operators settling the same fine"""

    def test_conflict_is_retried_on_fresh_state(self, system, member, operator, monkeypatch):
        loan = fined_loan(system, member)
        original = system.store.atomic_save
        attempts = []

        def conflict_once(loan=None, member=None, transaction=None):
            attempts.append(1)
            if len(attempts) == 1:
                raise PersistenceConflict("simulated")
            return original(loan=loan, member=member, transaction=transaction)

        monkeypatch.setattr(system.store, "atomic_save", conflict_once)
        transaction = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH,
                                                   operator_id=operator.id)
        assert len(attempts) == 2
        assert transaction.receipt_number is not None

    def test_only_one_of_two_racing_payments_wins(self, system, member, operator):
        loan = fined_loan(system, member)
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            barrier.wait()
            try:
                system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
                outcomes.append("paid")
            except AlreadySettled:
                outcomes.append("settled")

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["paid", "settled"]
        stored = system.store.find_member(member.id)
        assert stored.total_fines_paid == Money.of("20.00")
        assert len(system.store.find_transactions_by_member(member.id)) == 1


class TestWaive:
    """Test forgiving a fine"""

    def test_waive_pending_fine(self, system, member, operator):
        """A pending 15.00 fine is waived with a WAIVED ledger entry"""
        loan = fined_loan(system, member, days_overdue=15, rate=Money.of("1.00"))

        transaction = system.payment_processor.waive(loan.id, "goodwill", operator.id)

        assert transaction.payment_method == PaymentMethod.WAIVED
        assert transaction.amount == Money.of("15.00")
        assert transaction.notes == "Fine waived: goodwill"
        assert transaction.receipt_number.startswith("FINE-20240315-")

        loan = system.store.find_loan(loan.id)
        assert loan.fine_status == FineStatus.WAIVED
        assert loan.fine_amount.is_zero()

        stored = system.store.find_member(member.id)
        assert stored.current_fines_due.is_zero()
        assert stored.total_fines_paid.is_zero()
        assert stored.overdue_books_count == 1

    def test_waive_requires_reason(self, system, member, operator):
        loan = fined_loan(system, member)
        with pytest.raises(InvalidInput):
            system.payment_processor.waive(loan.id, " ", operator.id)

    def test_waive_settled_fine(self, system, member, operator):
        loan = fined_loan(system, member)
        system.payment_processor.waive(loan.id, "goodwill", operator.id)
        with pytest.raises(AlreadySettled):
            system.payment_processor.waive(loan.id, "again", operator.id)
        with pytest.raises(AlreadySettled):
            system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)

    def test_waived_total(self, system, member, operator):
        loan = fined_loan(system, member)
        system.payment_processor.waive(loan.id, "goodwill", operator.id)
        totals = system.reporter.get_totals()
        assert totals.waived == Money.of("20.00")
        assert totals.collected.is_zero()


class TestRefund:
    """Test compensating refund entries"""

    def test_refund_appends_entry(self, system, member, operator):
        loan = fined_loan(system, member)
        paid = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CARD, operator_id=operator.id)

        refund = system.payment_processor.refund(paid.receipt_number, "charged twice", operator.id)

        assert refund.status == TransactionStatus.REFUNDED
        assert refund.refunds_receipt == paid.receipt_number
        assert refund.amount == Money.of("20.00")
        assert refund.receipt_number != paid.receipt_number
        assert refund.notes == f"Refund of {paid.receipt_number}: charged twice"

        original = system.store.find_transaction(paid.id)
        assert original.status == TransactionStatus.COMPLETED
        assert system.store.find_loan(loan.id).fine_status == FineStatus.PAID
        assert system.reporter.get_totals().collected.is_zero()

    def test_refund_twice(self, system, member, operator):
        loan = fined_loan(system, member)
        paid = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        system.payment_processor.refund(paid.receipt_number, "error", operator.id)
        with pytest.raises(InvalidTransition):
            system.payment_processor.refund(paid.receipt_number, "error", operator.id)

    def test_refund_of_waiver(self, system, member, operator):
        loan = fined_loan(system, member)
        waived = system.payment_processor.waive(loan.id, "goodwill", operator.id)
        with pytest.raises(InvalidInput):
            system.payment_processor.refund(waived.receipt_number, "no", operator.id)

    def test_refund_of_refund(self, system, member, operator):
        loan = fined_loan(system, member)
        paid = system.payment_processor.pay(loan.id, "20.00", PaymentMethod.CASH, operator_id=operator.id)
        refund = system.payment_processor.refund(paid.receipt_number, "error", operator.id)
        with pytest.raises(InvalidInput):
            system.payment_processor.refund(refund.receipt_number, "error", operator.id)

    def test_unknown_receipt(self, system, operator):
        with pytest.raises(NotFound):
            system.payment_processor.refund("FINE-20240315-999999", "error", operator.id)
